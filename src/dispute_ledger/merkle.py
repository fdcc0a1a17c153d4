"""
Merkle commitment over an evidence identifier set.

Canonicalization and odd-node handling are defined here exactly once:

    1. Sort identifiers lexicographically (Unicode code point order).
    2. Leaf digest = hash(identifier as UTF-8).
    3. Internal digest = hash(left || right).
    4. An odd level pairs its last node with itself; no leaf is invented.

A single identifier yields a root equal to its leaf digest and an empty
proof. Every verifier, on-chain or off-chain, must reproduce these rules.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .hashing import HashEngine, DEFAULT_HASH_ENGINE
from .proofs import ProofPosition, ProofStep
from .exceptions import InvalidInputError, NotFoundError


def canonicalize_leaves(identifiers: Iterable[str]) -> List[str]:
    """
    Canonical leaf order for a set of evidence identifiers.

    Raises:
        InvalidInputError: On empty input, blank identifiers or duplicates
    """
    ids = list(identifiers)
    if not ids:
        raise InvalidInputError("empty Merkle input", field="evidence_ids")

    for value in ids:
        if not isinstance(value, str) or not value:
            raise InvalidInputError(
                "evidence identifiers must be non-empty strings",
                field="evidence_ids"
            )

    if len(set(ids)) != len(ids):
        duplicates = sorted({v for v in ids if ids.count(v) > 1})
        raise InvalidInputError(
            "duplicate evidence identifiers",
            field="evidence_ids",
            details={"duplicates": duplicates}
        )

    return sorted(ids)


@dataclass
class MerkleTree:
    """Built tree with every level retained for proof generation."""
    leaves: List[str]
    levels: List[List[bytes]] = field(repr=False)

    @property
    def root(self) -> bytes:
        return self.levels[-1][0]

    @property
    def root_hex(self) -> str:
        return self.root.hex()

    @property
    def size(self) -> int:
        return len(self.leaves)

    def proof_for(self, leaf_value: str) -> List[ProofStep]:
        """
        Inclusion path for one identifier.

        Raises:
            NotFoundError: If the identifier is not a leaf of this tree
        """
        try:
            index = self.leaves.index(leaf_value)
        except ValueError:
            raise NotFoundError(f"{leaf_value} is not a leaf of this tree")

        proof: List[ProofStep] = []
        for level in self.levels[:-1]:
            if index % 2 == 0:
                # Last node of an odd level is paired with itself
                sibling_index = index + 1 if index + 1 < len(level) else index
                proof.append(ProofStep(level[sibling_index], ProofPosition.RIGHT))
            else:
                proof.append(ProofStep(level[index - 1], ProofPosition.LEFT))
            index //= 2
        return proof


class MerkleBuilder:
    """Builds commitments using the shared HashEngine."""

    def __init__(self, hash_engine: Optional[HashEngine] = None):
        self.hash_engine = hash_engine or DEFAULT_HASH_ENGINE

    def build(self, identifiers: Iterable[str]) -> MerkleTree:
        leaves = canonicalize_leaves(identifiers)

        current = [self.hash_engine.hash_text(leaf) for leaf in leaves]
        levels = [current]
        while len(current) > 1:
            next_level = []
            for i in range(0, len(current), 2):
                left = current[i]
                right = current[i + 1] if i + 1 < len(current) else left
                next_level.append(self.hash_engine.hash_pair(left, right))
            levels.append(next_level)
            current = next_level

        return MerkleTree(leaves=leaves, levels=levels)

    def root(self, identifiers: Iterable[str]) -> bytes:
        return self.build(identifiers).root
