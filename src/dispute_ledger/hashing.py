"""
Digest function shared by every commitment and verifier.

Merkle roots must be reproducible across processes and across the
chain-side and service-side verifiers, so all components hash through a
single HashEngine instance instead of calling hashlib directly.
"""

import hashlib
from typing import Union

from .exceptions import InvalidInputError


class HashEngine:
    """
    Fixed-width collision-resistant digest over arbitrary bytes.

    Stateless; safe to share between threads and event loops.
    """

    def __init__(self, algorithm: str = "sha256"):
        if algorithm not in hashlib.algorithms_guaranteed:
            raise InvalidInputError(
                f"Unsupported hash algorithm: {algorithm}",
                field="algorithm"
            )
        digest_size = hashlib.new(algorithm).digest_size
        if not digest_size:
            # shake_128 / shake_256 have no fixed width
            raise InvalidInputError(
                f"Variable-length hash algorithm not supported: {algorithm}",
                field="algorithm"
            )
        self.algorithm = algorithm
        self.digest_size = digest_size

    def hash(self, data: bytes) -> bytes:
        """Digest raw bytes."""
        return hashlib.new(self.algorithm, data).digest()

    def hash_text(self, text: str) -> bytes:
        """Digest the UTF-8 encoding of text."""
        return self.hash(text.encode("utf-8"))

    def hash_pair(self, left: bytes, right: bytes) -> bytes:
        """Internal node digest: hash(left || right)."""
        return self.hash(left + right)

    def from_hex(self, value: Union[str, bytes]) -> bytes:
        """
        Parse a digest from its hex form.

        Raises:
            InvalidInputError: If value is not hex of the engine's width
        """
        if isinstance(value, bytes):
            digest = value
        else:
            try:
                digest = bytes.fromhex(value)
            except ValueError:
                raise InvalidInputError(f"Malformed digest: {value[:20]}", field="digest")
        if len(digest) != self.digest_size:
            raise InvalidInputError(
                f"Digest must be {self.digest_size} bytes, got {len(digest)}",
                field="digest"
            )
        return digest

    def __repr__(self) -> str:
        return f"HashEngine({self.algorithm!r})"


DEFAULT_HASH_ENGINE = HashEngine("sha256")
