"""
Ed25519 signing of anchored case packages.

The anchored envelope carries the package, a detached signature and the
signer's public key so a third-party reviewer can check who produced it
without access to this service.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey
)

KeyMaterial = Union[bytes, str]

_RAW = dict(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)


def _canonical_json(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _raw_public(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(**_RAW)


def _load_key(material: KeyMaterial, private: bool):
    """Raw 32-byte or PEM Ed25519 key, private or public."""
    if isinstance(material, str):
        material = material.encode("utf-8")
    expected = Ed25519PrivateKey if private else Ed25519PublicKey

    try:
        if material.lstrip().startswith(b"-----BEGIN"):
            if private:
                key = serialization.load_pem_private_key(material, password=None)
            else:
                key = serialization.load_pem_public_key(material)
        elif len(material) == 32:
            key = expected.from_private_bytes(material) if private else expected.from_public_bytes(material)
        else:
            raise ValueError(f"expected 32 raw bytes or PEM, got {len(material)} bytes")
    except (ValueError, TypeError) as e:
        raise ValueError(f"Cannot load Ed25519 {'private' if private else 'public'} key: {e}")

    if not isinstance(key, expected):
        raise ValueError(f"Key is {type(key).__name__}, not Ed25519")
    return key


class Ed25519Signer:
    """Signs package bytes with the ledger's key."""

    def __init__(self, private_key: Union[KeyMaterial, Ed25519PrivateKey]):
        if isinstance(private_key, Ed25519PrivateKey):
            self._key = private_key
        else:
            self._key = _load_key(private_key, private=True)

    @classmethod
    def from_file(cls, key_path: Path) -> "Ed25519Signer":
        return cls(Path(key_path).read_bytes())

    def sign(self, data: bytes) -> bytes:
        """64-byte detached signature over data."""
        return self._key.sign(data)

    def get_public_key_bytes(self) -> bytes:
        return _raw_public(self._key)


class Ed25519Verifier:
    """Checks detached signatures against one public key."""

    def __init__(self, public_key: Union[KeyMaterial, Ed25519PublicKey]):
        if isinstance(public_key, Ed25519PublicKey):
            self._key = public_key
        else:
            self._key = _load_key(public_key, private=False)

    def verify(self, data: bytes, signature: bytes) -> bool:
        try:
            self._key.verify(signature, data)
        except InvalidSignature:
            return False
        return True


def generate_keypair() -> Tuple[bytes, bytes]:
    """
    New signing key for a ledger deployment.

    Returns:
        (raw private key, raw public key), 32 bytes each
    """
    key = Ed25519PrivateKey.generate()
    private_bytes = key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )
    return private_bytes, _raw_public(key)


def seal_package(package_bytes: bytes, signer: Optional[Ed25519Signer] = None) -> bytes:
    """
    Wrap canonical package bytes in a (optionally signed) envelope.

    The signature covers exactly package_bytes, which open_package
    reproduces by re-serializing the embedded package canonically.
    """
    envelope = {
        "package": json.loads(package_bytes),
        "signature": None,
        "public_key": None,
    }
    if signer is not None:
        envelope["signature"] = signer.sign(package_bytes).hex()
        envelope["public_key"] = signer.get_public_key_bytes().hex()

    return _canonical_json(envelope)


def open_package(envelope_bytes: bytes) -> Tuple[Dict[str, Any], Optional[bool]]:
    """
    Unwrap an envelope.

    Returns:
        (package dict, signature_valid); signature_valid is None for
        unsigned envelopes
    """
    envelope = json.loads(envelope_bytes)
    package = envelope["package"]
    if not envelope.get("signature"):
        return package, None

    verifier = Ed25519Verifier(bytes.fromhex(envelope["public_key"]))
    return package, verifier.verify(_canonical_json(package), bytes.fromhex(envelope["signature"]))
