"""
Inclusion proof format and verification.

A proof is an ordered list of (sibling digest, position) steps from the
leaf up to the root. The verifier is stateless and knows nothing about
where the evidence or the tree is stored.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from .hashing import HashEngine, DEFAULT_HASH_ENGINE
from .exceptions import InvalidInputError


class ProofPosition(str, Enum):
    """Which side of the running digest the sibling sits on."""
    LEFT = "left"
    RIGHT = "right"


@dataclass(frozen=True)
class ProofStep:
    """One level of an inclusion path."""
    sibling: bytes
    position: ProofPosition

    def to_dict(self) -> Dict[str, Any]:
        return {"sibling": self.sibling.hex(), "position": self.position.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofStep":
        try:
            sibling = bytes.fromhex(data["sibling"])
            position = ProofPosition(data["position"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInputError(f"Malformed proof step: {e}", field="proof")
        return cls(sibling=sibling, position=position)


def proof_to_list(proof: Sequence[ProofStep]) -> List[Dict[str, Any]]:
    return [step.to_dict() for step in proof]


def proof_from_list(data: Sequence[Dict[str, Any]]) -> List[ProofStep]:
    return [ProofStep.from_dict(item) for item in data]


class ProofVerifier:
    """
    Recompute a root from a leaf value and its inclusion path.

    Usage:
        verifier = ProofVerifier()
        ok = verifier.verify("receipt-tx", tree.proof_for("receipt-tx"), tree.root)
    """

    def __init__(self, hash_engine: Optional[HashEngine] = None):
        self.hash_engine = hash_engine or DEFAULT_HASH_ENGINE

    def compute_root(self, leaf_value: str, proof: Sequence[ProofStep]) -> bytes:
        current = self.hash_engine.hash_text(leaf_value)
        for step in proof:
            if step.position == ProofPosition.LEFT:
                current = self.hash_engine.hash_pair(step.sibling, current)
            else:
                current = self.hash_engine.hash_pair(current, step.sibling)
        return current

    def verify(
        self,
        leaf_value: str,
        proof: Sequence[ProofStep],
        candidate_root: Union[bytes, str]
    ) -> bool:
        """
        Check that leaf_value is committed to candidate_root.

        A mismatch (including a malformed or wrong-width root) is a normal False,
        never an exception.
        """
        try:
            candidate_root = self.hash_engine.from_hex(candidate_root)
        except InvalidInputError:
            return False

        return self.compute_root(leaf_value, proof) == candidate_root
