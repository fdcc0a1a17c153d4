"""
Dispute case registry.

Creates cases over a validated evidence subset, commits them to a Merkle
root, anchors the serialized package, and applies every status change
through a compare-and-set on (case_id, expected_status).

Storage layout:
    case:<id>                        DisputeCase JSON
    idx:subject-cases:<subject>      case ids for a subject
    idx:actor-cases:<actor>          case ids created or resolved by an actor
    claim:<subject>:<root hex>       id of the pending case over that evidence set
    pending:<id>                     marker while the case is pending
    unanchored:<id>                  marker while scheduled anchoring may still run
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .anchoring import AnchorGateway, anchor_once, anchor_with_retry, build_anchor_tags
from .config import LedgerConfig
from .crypto import Ed25519Signer, seal_package
from .evidence import EvidenceStore
from .exceptions import (
    AnchoringFailed,
    ConflictError,
    ExternalDependencyFailure,
    InvalidInputError,
    NotFoundError,
)
from .merkle import MerkleBuilder
from .models import CasePackage, CaseStatus, DisputeCase
from .proofs import ProofStep, ProofVerifier
from .storage import KeyValueStore
from .utils import Clock, IdGenerator, SystemClock, UUIDIdGenerator

logger = logging.getLogger(__name__)


def case_key(case_id: str) -> str:
    return f"case:{case_id}"


def subject_cases_index(subject_id: str) -> str:
    return f"idx:subject-cases:{subject_id}"


def actor_cases_index(actor: str) -> str:
    return f"idx:actor-cases:{actor}"


def claim_key(subject_id: str, merkle_root: str) -> str:
    return f"claim:{subject_id}:{merkle_root}"


def pending_key(case_id: str) -> str:
    return f"pending:{case_id}"


def unanchored_key(case_id: str) -> str:
    return f"unanchored:{case_id}"


class CaseRegistry:
    """
    Persist and transition dispute cases.

    Usage:
        registry = CaseRegistry(config, store, evidence_store, gateway=gateway)
        case = await registry.create_case("lease-42", ids, actor="0xabc")
        await registry.resolve_case(case.id, "Deposit returned", actor="arbiter")
    """

    def __init__(
        self,
        config: LedgerConfig,
        store: KeyValueStore,
        evidence_store: EvidenceStore,
        gateway: Optional[AnchorGateway] = None,
        builder: Optional[MerkleBuilder] = None,
        verifier: Optional[ProofVerifier] = None,
        signer: Optional[Ed25519Signer] = None,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None
    ):
        self.config = config
        self.store = store
        self.evidence_store = evidence_store
        self.gateway = gateway
        self.builder = builder or MerkleBuilder()
        self.verifier = verifier or ProofVerifier(self.builder.hash_engine)
        self.signer = signer
        self.clock = clock or SystemClock()
        self.id_generator = id_generator or UUIDIdGenerator()

    # ========================================================================
    # Creation
    # ========================================================================

    def _validate_request(self, subject_id: str, evidence_ids: Sequence[str], actor: str):
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise InvalidInputError("subject_id is required", field="subject_id")
        if not isinstance(actor, str) or not actor.strip():
            raise InvalidInputError("actor is required", field="actor")
        if isinstance(evidence_ids, str) or not isinstance(evidence_ids, Sequence):
            raise InvalidInputError("evidence_ids must be a list", field="evidence_ids")

        count = len(evidence_ids)
        if count < self.config.min_evidence:
            raise InvalidInputError(
                "insufficient evidence",
                field="evidence_ids",
                details={"count": count, "min": self.config.min_evidence}
            )
        if count > self.config.max_evidence:
            raise InvalidInputError(
                "too much evidence",
                field="evidence_ids",
                details={"count": count, "max": self.config.max_evidence}
            )

    async def create_case(
        self,
        subject_id: str,
        evidence_ids: Sequence[str],
        actor: str
    ) -> DisputeCase:
        """
        Create a pending case over evidence_ids and anchor it.

        Raises:
            InvalidInputError: Bounds, duplicates or unknown evidence; nothing persisted
            ConflictError: A pending case over the same evidence set exists,
                or the generated case id is taken
            AnchoringFailed: Case persisted but anchoring failed (carries .case)
        """
        self._validate_request(subject_id, evidence_ids, actor)
        evidence_ids = list(evidence_ids)

        # Duplicates and blank ids are rejected here, before any lookup
        tree = self.builder.build(evidence_ids)
        records = self.evidence_store.require_for_subject(subject_id, evidence_ids)

        now = self.clock.now()
        case = DisputeCase(
            id=self.id_generator.new_id("DC"),
            subject_id=subject_id,
            evidence_ids=evidence_ids,
            merkle_root=tree.root_hex,
            created_by=actor,
            created_at=now,
            expires_at=now + self.config.ttl,
        )

        claim = claim_key(subject_id, case.merkle_root)
        if not self.store.put_if_absent(claim, case.id):
            existing = self.store.get(claim)
            raise ConflictError(
                "a pending case over this evidence set already exists",
                details={"case_id": existing}
            )

        if not self.store.put_if_absent(case_key(case.id), case.model_dump_json()):
            self.store.delete(claim)
            raise ConflictError(f"Case id collision: {case.id}")

        self.store.index_add(subject_cases_index(subject_id), case.id)
        self.store.index_add(actor_cases_index(actor), case.id)
        self.store.put_if_absent(pending_key(case.id), "")
        self.store.put_if_absent(unanchored_key(case.id), "")

        logger.info(
            f"Created dispute case {case.id} subject={subject_id} "
            f"evidence={len(evidence_ids)} root={case.merkle_root[:16]}..."
        )

        if self.gateway is None:
            return case

        try:
            ref = await anchor_once(
                self.gateway,
                *self._package(case, records, tree.leaves),
                timeout=self.config.anchor_timeout_seconds
            )
        except ExternalDependencyFailure as e:
            case = self._record_anchor_failure(case.id, e.retryable)
            logger.warning(f"Anchoring failed for case {case.id}: {e.message}")
            raise AnchoringFailed(case, e)

        return self._record_anchor(case.id, ref)

    # ========================================================================
    # Anchoring
    # ========================================================================

    def _package(self, case: DisputeCase, records, leaves: List[str]):
        package = CasePackage.from_case(
            case, records, leaves, hash_algorithm=self.builder.hash_engine.algorithm
        )
        tags = build_anchor_tags(package, self.config.app_name, self.config.app_version)
        return seal_package(package.to_bytes(), self.signer), tags

    def _record_anchor(self, case_id: str, ref: str) -> DisputeCase:
        def mutate(case: DisputeCase) -> DisputeCase:
            return case.model_copy(update={
                "anchor_ref": ref,
                "anchored_at": self.clock.now(),
                "anchor_attempts": case.anchor_attempts + 1,
                "anchor_error_retryable": None,
            })

        case = self._update(case_id, mutate)
        self.store.delete(unanchored_key(case_id))
        logger.info(f"Anchored case {case_id} ref={ref}")
        return case

    def _record_anchor_failure(self, case_id: str, retryable: bool) -> DisputeCase:
        case = self._update(
            case_id,
            lambda case: case.model_copy(update={
                "anchor_attempts": case.anchor_attempts + 1,
                "anchor_error_retryable": retryable,
            })
        )
        if not self._retry_scheduled(case):
            self.store.delete(unanchored_key(case_id))
            logger.error(
                f"Giving up scheduled anchoring for case {case_id} after "
                f"{case.anchor_attempts} attempts (retryable={retryable})"
            )
        return case

    def _retry_scheduled(self, case: DisputeCase) -> bool:
        return (
            case.anchor_ref is None
            and case.anchor_error_retryable is not False
            and case.anchor_attempts < self.config.anchor_max_total_attempts
        )

    async def anchor_case(self, case_id: str, *, retry: bool = False) -> DisputeCase:
        """
        Anchor an existing case that has no anchor_ref yet.

        Already anchored cases are returned unchanged. With retry=True the
        configured bounded backoff is used.

        Raises:
            NotFoundError: Unknown case
            ExternalDependencyFailure: Anchoring failed (case untouched otherwise)
        """
        case = self.get_case(case_id)
        if case.anchor_ref is not None:
            return case
        if self.gateway is None:
            raise ExternalDependencyFailure("No anchor gateway configured", retryable=False)

        records = [self.evidence_store.get(eid) for eid in case.evidence_ids]
        leaves = self.builder.build(case.evidence_ids).leaves
        data, tags = self._package(case, records, leaves)

        try:
            if retry:
                ref = await anchor_with_retry(
                    self.gateway,
                    data,
                    tags,
                    max_attempts=self.config.anchor_max_retries,
                    base_delay=self.config.anchor_retry_base_seconds,
                    max_delay=self.config.anchor_retry_max_seconds,
                    timeout=self.config.anchor_timeout_seconds,
                )
            else:
                ref = await anchor_once(
                    self.gateway, data, tags, timeout=self.config.anchor_timeout_seconds
                )
        except ExternalDependencyFailure as e:
            self._record_anchor_failure(case_id, e.retryable)
            raise

        return self._record_anchor(case_id, ref)

    def list_unanchored(self) -> List[DisputeCase]:
        """
        Cases still due for scheduled anchoring.

        Excludes cases whose last failure was terminal and cases that
        reached anchor_max_total_attempts; anchor_case still accepts them.
        """
        cases = []
        for key in self.store.keys("unanchored:"):
            case = self.find_case(key[len("unanchored:"):])
            if case is not None and self._retry_scheduled(case):
                cases.append(case)
        return cases

    # ========================================================================
    # Transitions
    # ========================================================================

    def _update(self, case_id: str, mutate: Callable[[DisputeCase], DisputeCase]) -> DisputeCase:
        """CAS loop for non-status fields; retries until the write lands."""
        key = case_key(case_id)
        while True:
            raw = self.store.get(key)
            if raw is None:
                raise NotFoundError(f"Case {case_id} not found")
            updated = mutate(DisputeCase.model_validate_json(raw))
            if self.store.compare_and_set(key, raw, updated.model_dump_json()):
                return updated

    def transition(
        self,
        case_id: str,
        expected: CaseStatus,
        mutate: Callable[[DisputeCase], DisputeCase]
    ) -> Optional[DisputeCase]:
        """
        Compare-and-set (case_id, expected status) -> mutate(case).

        A lost compare caused by a concurrent non-status write (anchoring)
        is retried; once the stored status differs from expected, returns
        None and writes nothing.

        Raises:
            NotFoundError: Unknown case
        """
        key = case_key(case_id)
        while True:
            raw = self.store.get(key)
            if raw is None:
                raise NotFoundError(f"Case {case_id} not found")

            case = DisputeCase.model_validate_json(raw)
            if case.status != expected:
                return None

            updated = mutate(case)
            if self.store.compare_and_set(key, raw, updated.model_dump_json()):
                if updated.status.is_terminal:
                    self.store.delete(pending_key(case_id))
                    self._release_claim(updated)
                return updated

    def _release_claim(self, case: DisputeCase):
        key = claim_key(case.subject_id, case.merkle_root)
        if self.store.get(key) == case.id:
            self.store.delete(key)

    async def resolve_case(self, case_id: str, resolution_text: str, actor: str) -> DisputeCase:
        """
        Pending -> Resolved.

        Raises:
            InvalidInputError: Empty resolution text or actor
            NotFoundError: Unknown case
            ConflictError: Case already resolved or expired
        """
        if not isinstance(resolution_text, str) or not resolution_text.strip():
            raise InvalidInputError("resolution text is required", field="resolution")
        if not isinstance(actor, str) or not actor.strip():
            raise InvalidInputError("actor is required", field="actor")

        now = self.clock.now()
        resolved = self.transition(
            case_id,
            CaseStatus.PENDING,
            lambda case: case.model_copy(update={
                "status": CaseStatus.RESOLVED,
                "resolution": resolution_text.strip(),
                "resolved_by": actor,
                "resolved_at": now,
            })
        )

        if resolved is None:
            current = self.get_case(case_id)
            raise ConflictError(
                f"Case {case_id} is {current.status.value}, not pending",
                details={"status": current.status.value}
            )

        self.store.index_add(actor_cases_index(actor), case_id)
        logger.info(f"Resolved dispute case {case_id} by {actor}")
        return resolved

    def expire_case(self, case_id: str, now: datetime) -> Optional[DisputeCase]:
        """
        Pending -> Expired if due at `now`; None if not pending or not due.
        """
        def mutate(case: DisputeCase) -> DisputeCase:
            return case.model_copy(update={"status": CaseStatus.EXPIRED, "expired_at": now})

        case = self.find_case(case_id)
        if case is None or not case.is_due(now):
            return None

        expired = self.transition(case_id, CaseStatus.PENDING, mutate)
        if expired is not None:
            logger.info(f"Expired dispute case {case_id} (expires_at={case.expires_at.isoformat()})")
        return expired

    # ========================================================================
    # Lookups
    # ========================================================================

    def find_case(self, case_id: str) -> Optional[DisputeCase]:
        raw = self.store.get(case_key(case_id))
        return DisputeCase.model_validate_json(raw) if raw else None

    def get_case(self, case_id: str) -> DisputeCase:
        case = self.find_case(case_id)
        if case is None:
            raise NotFoundError(f"Case {case_id} not found")
        return case

    def _load_index(self, index_key: str) -> List[DisputeCase]:
        cases = []
        for case_id in self.store.index_members(index_key):
            case = self.find_case(case_id)
            if case is not None:
                cases.append(case)
        cases.sort(key=lambda c: c.created_at, reverse=True)
        return cases

    def list_cases_for_subject(self, subject_id: str) -> List[DisputeCase]:
        """Cases for a subject, newest first."""
        return self._load_index(subject_cases_index(subject_id))

    def list_cases_for_actor(self, actor: str) -> List[DisputeCase]:
        """Cases an actor created or resolved, newest first."""
        return self._load_index(actor_cases_index(actor))

    def pending_case_ids(self) -> List[str]:
        """Ids only; the sweep loads each case itself so one bad record is isolated."""
        return [key[len("pending:"):] for key in self.store.keys("pending:")]

    # ========================================================================
    # Proofs
    # ========================================================================

    def inclusion_proof(self, case_id: str, evidence_id: str) -> List[ProofStep]:
        """
        Inclusion path for evidence_id within the case's tree.

        Raises:
            NotFoundError: Unknown case, or evidence not part of the case
        """
        case = self.get_case(case_id)
        if evidence_id not in case.evidence_ids:
            raise NotFoundError(f"Evidence {evidence_id} is not part of case {case_id}")
        return self.builder.build(case.evidence_ids).proof_for(evidence_id)

    def verify_evidence_in_case(
        self,
        case_id: str,
        evidence_id: str,
        proof: Sequence[ProofStep]
    ) -> bool:
        """
        Check a supplied proof against the case's stored root.

        Raises:
            NotFoundError: Unknown case, or evidence reference unknown to the case
        """
        case = self.get_case(case_id)
        if evidence_id not in case.evidence_ids:
            raise NotFoundError(f"Evidence {evidence_id} is not part of case {case_id}")
        return self.verifier.verify(evidence_id, proof, case.merkle_root)
