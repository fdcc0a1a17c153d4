"""
Data models for the dispute ledger.

EvidenceRecord and DisputeCase are the persisted records; CasePackage is
the serialized unit written to immutable storage when a case is anchored.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ============================================================================
# Enums
# ============================================================================


class EvidenceKind(str, Enum):
    """What the referenced material is."""
    LEASE = "lease"
    PAYMENT = "payment"
    MESSAGE = "message"
    TICKET = "ticket"
    OTHER = "other"


class CaseStatus(str, Enum):
    """
    Dispute case state.

    pending -> resolved   (resolve_case)
    pending -> expired    (expiry sweep)
    resolved and expired are terminal.
    """
    PENDING = "pending"
    RESOLVED = "resolved"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not CaseStatus.PENDING


# ============================================================================
# Evidence
# ============================================================================


class EvidenceRecord(BaseModel):
    """
    Reference to one piece of externally stored material.

    Immutable once created, except for the one-way verified flag.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., description="Evidence identifier")
    subject_id: str = Field(..., description="Lease or other subject this evidence belongs to")
    kind: EvidenceKind = Field(..., description="Evidence category")
    content_ref: str = Field(..., description="External storage reference of the content")
    content_hash: str = Field(..., description="Lowercase hex digest of the referenced content")
    submitted_by: str = Field(..., description="Actor that submitted the evidence")
    submitted_at: datetime = Field(..., description="Submission time (UTC)")

    verified: bool = Field(default=False, description="Set once by an authorized verifier")
    verified_by: Optional[str] = Field(default=None)
    verified_at: Optional[datetime] = Field(default=None)


# ============================================================================
# Dispute cases
# ============================================================================


class DisputeCase(BaseModel):
    """
    Bundle of evidence references committed to one Merkle root.

    Never deleted; mutated only by resolution, expiry and anchoring.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., description="Case identifier")
    subject_id: str = Field(..., description="Subject the dispute concerns")
    evidence_ids: List[str] = Field(..., description="Evidence ids in submission order")
    merkle_root: str = Field(..., description="Hex Merkle root over the canonical evidence set")

    created_by: str
    created_at: datetime
    expires_at: datetime

    status: CaseStatus = Field(default=CaseStatus.PENDING)

    # Resolution
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    # Expiry
    expired_at: Optional[datetime] = None

    # Anchoring
    anchor_ref: Optional[str] = Field(
        default=None,
        description="Immutable storage reference; unset until anchoring succeeds"
    )
    anchored_at: Optional[datetime] = None
    anchor_attempts: int = Field(default=0, ge=0, description="Anchoring rounds run so far")
    anchor_error_retryable: Optional[bool] = Field(
        default=None,
        description="Outcome of the last failed round; False stops scheduled retries"
    )

    @model_validator(mode="after")
    def check_invariants(self):
        if len(set(self.evidence_ids)) != len(self.evidence_ids):
            raise ValueError("evidence_ids must not contain duplicates")
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")
        if (self.status == CaseStatus.RESOLVED) != (self.resolution is not None):
            raise ValueError("resolution is present iff status is resolved")
        return self

    @property
    def is_pending(self) -> bool:
        return self.status == CaseStatus.PENDING

    def is_due(self, now: datetime) -> bool:
        """Whether the expiry sweep should expire this case at `now`."""
        return self.is_pending and self.expires_at <= now


# ============================================================================
# Anchoring package
# ============================================================================


class PackageEvidence(BaseModel):
    """Evidence entry inside an anchored package."""
    id: str
    kind: EvidenceKind
    content_ref: str
    content_hash: str


class CasePackage(BaseModel):
    """
    Serialized case written to immutable storage.

    Carries enough to recompute the root (canonical leaves) and to check
    each referenced content hash without access to this service.
    """

    version: str = Field(default="1.0", description="Package format version")
    case_id: str
    subject_id: str
    merkle_root: str
    hash_algorithm: str = "sha256"
    canonical_leaves: List[str]
    evidence: List[PackageEvidence]
    created_by: str
    created_at: datetime
    expires_at: datetime
    status: CaseStatus

    @classmethod
    def from_case(
        cls,
        case: DisputeCase,
        records: List[EvidenceRecord],
        canonical_leaves: List[str],
        hash_algorithm: str = "sha256"
    ) -> "CasePackage":
        by_id = {r.id: r for r in records}
        return cls(
            case_id=case.id,
            subject_id=case.subject_id,
            merkle_root=case.merkle_root,
            hash_algorithm=hash_algorithm,
            canonical_leaves=canonical_leaves,
            evidence=[
                PackageEvidence(
                    id=eid,
                    kind=by_id[eid].kind,
                    content_ref=by_id[eid].content_ref,
                    content_hash=by_id[eid].content_hash,
                )
                for eid in case.evidence_ids
            ],
            created_by=case.created_by,
            created_at=case.created_at,
            expires_at=case.expires_at,
            status=case.status,
        )

    def canonical_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def to_bytes(self) -> bytes:
        """Canonical JSON: sorted keys, compact separators."""
        return json.dumps(
            self.canonical_dict(),
            sort_keys=True,
            separators=(",", ":")
        ).encode("utf-8")
