"""
Evidence registry.

Append-only store of evidence references per subject. Records are never
deleted; the only mutation is the one-way verified flag.
"""

import logging
import re
from typing import Iterable, List, Optional

from .exceptions import ConflictError, ForbiddenError, InvalidInputError, NotFoundError
from .models import EvidenceKind, EvidenceRecord
from .storage import KeyValueStore
from .utils import Clock, IdGenerator, SystemClock, UUIDIdGenerator

logger = logging.getLogger(__name__)

_HEX_DIGEST = re.compile(r'^[0-9a-f]{32,128}$')


def evidence_key(evidence_id: str) -> str:
    return f"evidence:{evidence_id}"


def subject_evidence_index(subject_id: str) -> str:
    return f"idx:subject-evidence:{subject_id}"


def _require_text(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{field} is required", field=field)
    return value.strip()


def normalize_content_hash(value: str) -> str:
    """
    Normalize "sha256:ABCD..." / "abcd..." to lowercase hex.

    Raises:
        InvalidInputError: If the digest is not hex
    """
    digest = _require_text(value, "content_hash").lower()
    if digest.startswith("sha256:"):
        digest = digest[len("sha256:"):]
    if not _HEX_DIGEST.match(digest) or len(digest) % 2:
        raise InvalidInputError("content_hash must be a hex digest", field="content_hash")
    return digest


class EvidenceStore:
    """
    Submit, look up and verify evidence records.

    Submission only needs a collision-safe id; there is no cross-record
    locking. The verified flip goes through compare-and-set.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
        authorized_verifiers: Optional[Iterable[str]] = None
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.id_generator = id_generator or UUIDIdGenerator()
        self.authorized_verifiers = set(authorized_verifiers or [])

    def submit(
        self,
        subject_id: str,
        kind,
        content_ref: str,
        content_hash: str,
        submitted_by: str
    ) -> EvidenceRecord:
        """
        Record a new evidence reference.

        Raises:
            InvalidInputError: On a blank field, unknown kind or malformed hash
        """
        subject_id = _require_text(subject_id, "subject_id")
        content_ref = _require_text(content_ref, "content_ref")
        submitted_by = _require_text(submitted_by, "submitted_by")
        digest = normalize_content_hash(content_hash)

        try:
            kind = EvidenceKind(kind)
        except ValueError:
            raise InvalidInputError(
                f"kind must be one of {[k.value for k in EvidenceKind]}",
                field="kind"
            )

        record = EvidenceRecord(
            id=self.id_generator.new_id("EV"),
            subject_id=subject_id,
            kind=kind,
            content_ref=content_ref,
            content_hash=digest,
            submitted_by=submitted_by,
            submitted_at=self.clock.now(),
        )

        if not self.store.put_if_absent(evidence_key(record.id), record.model_dump_json()):
            # The generator handed out an id already in use
            raise ConflictError(f"Evidence id collision: {record.id}")

        self.store.index_add(subject_evidence_index(subject_id), record.id)

        logger.info(
            f"Recorded evidence {record.id} kind={kind.value} "
            f"subject={subject_id} by={submitted_by}"
        )
        return record

    def find(self, evidence_id: str) -> Optional[EvidenceRecord]:
        raw = self.store.get(evidence_key(evidence_id))
        return EvidenceRecord.model_validate_json(raw) if raw else None

    def get(self, evidence_id: str) -> EvidenceRecord:
        record = self.find(evidence_id)
        if record is None:
            raise NotFoundError(f"Evidence {evidence_id} not found")
        return record

    def mark_verified(self, evidence_id: str, verifier_id: str) -> EvidenceRecord:
        """
        Set the verified flag (false -> true only).

        Idempotent: an already verified record is returned unchanged and
        keeps its original verifier.

        Raises:
            NotFoundError: Unknown evidence
            ForbiddenError: Verifier not in the authorized set
        """
        verifier_id = _require_text(verifier_id, "verifier_id")
        if self.authorized_verifiers and verifier_id not in self.authorized_verifiers:
            raise ForbiddenError(f"{verifier_id} is not an authorized evidence verifier")

        key = evidence_key(evidence_id)
        while True:
            raw = self.store.get(key)
            if raw is None:
                raise NotFoundError(f"Evidence {evidence_id} not found")

            record = EvidenceRecord.model_validate_json(raw)
            if record.verified:
                return record

            updated = record.model_copy(update={
                "verified": True,
                "verified_by": verifier_id,
                "verified_at": self.clock.now(),
            })
            if self.store.compare_and_set(key, raw, updated.model_dump_json()):
                logger.info(f"Evidence {evidence_id} verified by {verifier_id}")
                return updated

    def list_by_subject(self, subject_id: str) -> List[EvidenceRecord]:
        """Records for a subject in submission order."""
        records = []
        for evidence_id in self.store.index_members(subject_evidence_index(subject_id)):
            record = self.find(evidence_id)
            if record is not None:
                records.append(record)
        return records

    def require_for_subject(self, subject_id: str, evidence_ids: Iterable[str]) -> List[EvidenceRecord]:
        """
        Resolve ids that must all belong to subject_id.

        Raises:
            InvalidInputError: "unknown evidence reference" listing offenders
        """
        records = []
        unknown = []
        for evidence_id in evidence_ids:
            record = self.find(evidence_id) if isinstance(evidence_id, str) else None
            if record is None or record.subject_id != subject_id:
                unknown.append(evidence_id)
            else:
                records.append(record)

        if unknown:
            raise InvalidInputError(
                "unknown evidence reference",
                field="evidence_ids",
                details={"unknown": unknown}
            )
        return records
