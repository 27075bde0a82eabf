"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every accepted
    settlement action, in the same transaction as the action itself.
    Provides chain validation for tamper detection and per-entity traces.

Architecture position:
    Kernel > Services -- imperative shell, called by SettlementEngine.

Invariants enforced:
    - Sequence monotonicity via SequenceService.
    - Chain integrity: hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash).
    - Append-only (ORM listener on AuditEvent).

Failure modes:
    - AuditChainBrokenError: recomputed hash or prev_hash linkage mismatch.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select

from pharmacy_kernel.domain.clock import Clock, SystemClock
from pharmacy_kernel.exceptions import AuditChainBrokenError
from pharmacy_kernel.logging_config import get_logger
from pharmacy_kernel.models.audit_event import AuditAction, AuditEvent
from pharmacy_kernel.services.base import BaseService
from pharmacy_kernel.services.sequence_service import SequenceService
from pharmacy_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


class AuditorService(BaseService):
    """
    Contract:
        ``record()`` appends one AuditEvent chained to the latest one.
        The audit counter lock is taken last in every settlement and held
        until commit, so the "latest hash" read here cannot be overtaken
        by a concurrent writer.
    """

    def __init__(self, session, clock: Clock | None = None, sequence_service: SequenceService | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._sequence_service = sequence_service or SequenceService(session)

    def _get_last_hash(self) -> str | None:
        return self.session.execute(
            select(AuditEvent.hash).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()

    def record(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Append a hash-chained audit event and flush it.

        Returns:
            The created AuditEvent.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        payload_data = to_json_safe(payload or {})
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self.session.add(audit_event)
        self.session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )
        return audit_event

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Raises:
            AuditChainBrokenError: If any stored hash or link is wrong.
        """
        events = self.session.execute(
            select(AuditEvent)
            .order_by(AuditEvent.seq)
            .execution_options(populate_existing=True)
        ).scalars().all()

        previous_hash: str | None = None
        for event in events:
            if event.prev_hash != previous_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": event.seq, "reason": "prev_hash mismatch"},
                )
                raise AuditChainBrokenError(
                    str(event.id), previous_hash or "None", event.prev_hash or "None"
                )

            expected_payload_hash = hash_payload(event.payload or {})
            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=AuditAction(event.action).value,
                payload_hash=expected_payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash or event.payload_hash != expected_payload_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": event.seq, "reason": "hash mismatch"},
                )
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)
            previous_hash = event.hash

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    def get_trace(self, entity_type: str, entity_id: UUID) -> list[AuditTraceEntry]:
        """Audit events for one entity, oldest first."""
        events = self.session.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
            .order_by(AuditEvent.seq)
        ).scalars().all()
        return [
            AuditTraceEntry(
                seq=event.seq,
                action=AuditAction(event.action),
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                payload=dict(event.payload or {}),
                hash=event.hash,
            )
            for event in events
        ]
