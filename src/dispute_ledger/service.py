"""
Dispute service facade.

The operations exposed to the API / message-routing layer. Every call
takes a pre-authenticated actor identity (signature validation happens
upstream) and returns models or raises a DisputeLedgerError.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .anchoring import AnchorGateway, HttpAnchorGateway
from .cases import CaseRegistry
from .config import LedgerConfig
from .crypto import Ed25519Signer
from .evidence import EvidenceStore
from .hashing import DEFAULT_HASH_ENGINE, HashEngine
from .lifecycle import LifecycleManager, SweepTask
from .merkle import MerkleBuilder
from .models import DisputeCase, EvidenceRecord
from .proofs import ProofStep, ProofVerifier, proof_to_list
from .storage import KeyValueStore, create_store
from .utils import Clock, IdGenerator, SystemClock, UUIDIdGenerator

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("dispute_ledger.audit")


def log_dispute_action(action: str, entity_id: str, subject_id: str, actor: str, **details: Any):
    """One audit line per mutating call."""
    extra = " ".join(f"{k}={v}" for k, v in details.items())
    audit_logger.info(
        f"action={action} entity={entity_id} subject={subject_id} actor={actor}"
        + (f" {extra}" if extra else "")
    )


class DisputeService:
    """Narrow interface over the evidence store, case registry and lifecycle."""

    def __init__(
        self,
        evidence_store: EvidenceStore,
        registry: CaseRegistry,
        lifecycle: LifecycleManager
    ):
        self.evidence_store = evidence_store
        self.registry = registry
        self.lifecycle = lifecycle

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def add_evidence(
        self,
        subject_id: str,
        kind: str,
        content_ref: str,
        content_hash: str,
        actor: str
    ) -> EvidenceRecord:
        record = self.evidence_store.submit(subject_id, kind, content_ref, content_hash, actor)
        log_dispute_action("evidence_added", record.id, record.subject_id, actor, kind=record.kind.value)
        return record

    def mark_evidence_verified(self, evidence_id: str, actor: str) -> EvidenceRecord:
        record = self.evidence_store.mark_verified(evidence_id, actor)
        log_dispute_action("evidence_verified", record.id, record.subject_id, actor)
        return record

    def list_evidence(self, subject_id: str) -> List[EvidenceRecord]:
        return self.evidence_store.list_by_subject(subject_id)

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    async def create_case(self, subject_id: str, evidence_ids: Sequence[str], actor: str) -> DisputeCase:
        case = await self.registry.create_case(subject_id, evidence_ids, actor)
        log_dispute_action(
            "case_created", case.id, case.subject_id, actor,
            evidence=len(case.evidence_ids), root=case.merkle_root
        )
        return case

    async def resolve_case(self, case_id: str, resolution_text: str, actor: str) -> DisputeCase:
        case = await self.registry.resolve_case(case_id, resolution_text, actor)
        log_dispute_action("case_resolved", case.id, case.subject_id, actor)
        return case

    def get_case(self, case_id: str) -> DisputeCase:
        return self.registry.get_case(case_id)

    def list_cases_for_subject(self, subject_id: str) -> List[DisputeCase]:
        return self.registry.list_cases_for_subject(subject_id)

    def list_cases_for_actor(self, actor: str) -> List[DisputeCase]:
        return self.registry.list_cases_for_actor(actor)

    # ------------------------------------------------------------------
    # Proofs
    # ------------------------------------------------------------------

    def inclusion_proof(self, case_id: str, evidence_id: str) -> List[Dict[str, Any]]:
        """Wire form of the inclusion path: [{"sibling": hex, "position": ...}]."""
        return proof_to_list(self.registry.inclusion_proof(case_id, evidence_id))

    def verify_evidence_in_case(self, case_id: str, evidence_id: str, proof: Sequence[Any]) -> bool:
        """Accepts ProofStep objects or their wire dicts."""
        steps = [
            step if isinstance(step, ProofStep) else ProofStep.from_dict(step)
            for step in proof
        ]
        return self.registry.verify_evidence_in_case(case_id, evidence_id, steps)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        return self.lifecycle.sweep_expired(now)

    def sweep_task(self, interval_seconds: float, jitter_pct: float = 0.0) -> SweepTask:
        return SweepTask(self.lifecycle, interval_seconds=interval_seconds, jitter_pct=jitter_pct)


def build_service(
    config: LedgerConfig,
    *,
    clock: Optional[Clock] = None,
    id_generator: Optional[IdGenerator] = None,
    gateway: Optional[AnchorGateway] = None,
    store: Optional[KeyValueStore] = None,
    hash_engine: Optional[HashEngine] = None,
    signer: Optional[Ed25519Signer] = None
) -> DisputeService:
    """
    Wire every collaborator explicitly.

    Without an explicit gateway, an HttpAnchorGateway is built when
    anchoring is enabled in config; otherwise cases are not anchored.
    """
    clock = clock or SystemClock()
    id_generator = id_generator or UUIDIdGenerator()
    hash_engine = hash_engine or DEFAULT_HASH_ENGINE

    if store is None:
        store = create_store(config.storage_backend, config.db_path)

    if gateway is None and config.anchor_enabled:
        gateway = HttpAnchorGateway(
            config.anchor_endpoint,
            api_key=config.read_anchor_api_key(),
            timeout_seconds=config.anchor_timeout_seconds,
            user_agent=f"{config.app_name}/{config.app_version}",
        )

    if signer is None and config.signing_key_file:
        signer = Ed25519Signer.from_file(config.signing_key_file)

    evidence_store = EvidenceStore(
        store,
        clock=clock,
        id_generator=id_generator,
        authorized_verifiers=config.authorized_verifiers,
    )
    registry = CaseRegistry(
        config,
        store,
        evidence_store,
        gateway=gateway,
        builder=MerkleBuilder(hash_engine),
        verifier=ProofVerifier(hash_engine),
        signer=signer,
        clock=clock,
        id_generator=id_generator,
    )
    lifecycle = LifecycleManager(registry, clock=clock)

    logger.info(
        f"Dispute service ready: backend={config.storage_backend} "
        f"anchoring={'on' if gateway is not None else 'off'} ttl={config.case_ttl_days}d "
        f"evidence=[{config.min_evidence}, {config.max_evidence}]"
    )
    return DisputeService(evidence_store, registry, lifecycle)
