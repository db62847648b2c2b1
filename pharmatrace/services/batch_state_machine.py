# pharmatrace/services/batch_state_machine.py
from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterable, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from pharmatrace.core.errors import ConflictError
from pharmatrace.db.base import utcnow
from pharmatrace.models.batch import Batch
from pharmatrace.models.enums import BatchStatus

logger = logging.getLogger(__name__)


class BatchStateMachine:
    """
    Lifecycle graph of a batch:

        DRAFT -> MINTED -> IN_TRANSIT -> DELIVERED
        MINTED | IN_TRANSIT | DELIVERED -> RECALLED

    DRAFT and RECALLED are absorbing for custody actions: nothing is
    transferred before a mint, and nothing moves once recalled.
    Re-asserting the current status (a second transfer while IN_TRANSIT)
    is not a transition and is always accepted.

    Status writes are conditional UPDATEs keyed on the statuses the move
    is allowed from, so a writer working from a stale row (a receipt
    confirmed after a concurrent recall) changes nothing.
    """

    TRANSITIONS: Dict[BatchStatus, FrozenSet[BatchStatus]] = {
        BatchStatus.DRAFT: frozenset({BatchStatus.MINTED}),
        BatchStatus.MINTED: frozenset({BatchStatus.IN_TRANSIT, BatchStatus.RECALLED}),
        BatchStatus.IN_TRANSIT: frozenset({BatchStatus.DELIVERED, BatchStatus.RECALLED}),
        BatchStatus.DELIVERED: frozenset({BatchStatus.RECALLED}),
        BatchStatus.RECALLED: frozenset(),
    }

    # ─────────────────────────────────────────────
    # GRAPH QUERIES
    # ─────────────────────────────────────────────

    def can_transition(self, current: BatchStatus, target: BatchStatus) -> bool:
        return target == current or target in self.TRANSITIONS[current]

    def sources_of(self, target: BatchStatus) -> FrozenSet[BatchStatus]:
        """Statuses with an edge into target."""
        return frozenset(s for s, nxt in self.TRANSITIONS.items() if target in nxt)

    # ─────────────────────────────────────────────
    # GUARDS
    # ─────────────────────────────────────────────

    def assert_status_in(self, batch: Batch, allowed: Iterable[BatchStatus], action: str) -> None:
        allowed = list(allowed)
        if BatchStatus(batch.status) not in allowed:
            names = " or ".join(s.value for s in allowed)
            raise ConflictError(f"{action}: batch status must be {names}, is {batch.status}.")

    def assert_transition(self, batch: Batch, target: BatchStatus) -> None:
        current = BatchStatus(batch.status)
        if not self.can_transition(current, target):
            raise ConflictError(
                f"Batch {batch.batch_number} cannot move from {current.value} to {target.value}."
            )

    # ─────────────────────────────────────────────
    # MUTATIONS
    # ─────────────────────────────────────────────

    def _move(
        self,
        db: Session,
        batch: Batch,
        field: str,
        target: BatchStatus,
        expected: Iterable[BatchStatus],
    ) -> bool:
        # an unset confirmed_status counts as DRAFT
        current = func.coalesce(getattr(Batch, field), BatchStatus.DRAFT.value)
        result = db.execute(
            update(Batch)
            .where(Batch.id == batch.id, current.in_([s.value for s in expected]))
            .values({field: target.value, "updated_at": utcnow()})
            .execution_options(synchronize_session=False)
        )
        db.expire(batch, [field, "updated_at"])
        return result.rowcount == 1

    def transition(
        self,
        db: Session,
        batch: Batch,
        target: BatchStatus,
        *,
        expected: Optional[Iterable[BatchStatus]] = None,
    ) -> None:
        """
        Strict move: rejects anything off the graph with ConflictError.

        `expected` defaults to the status the caller loaded; if the stored
        row no longer holds one of them the move is refused with
        ConflictError as well.
        """
        self.assert_transition(batch, target)
        current = BatchStatus(batch.status)
        if target == current:
            return
        if not self._move(db, batch, "status", target, expected or [current]):
            raise ConflictError(
                f"Batch {batch.batch_number} was changed by another request; reload and retry."
            )

    def advance(self, db: Session, batch: Batch, target: BatchStatus) -> bool:
        """
        Lenient move used by optimistic bumps and confirmation side effects.

        Applies the edge if the stored status has it, otherwise leaves the
        batch untouched (never regresses a status). Returns True when status
        changed.
        """
        moved = self._move(db, batch, "status", target, self.sources_of(target))
        if not moved:
            logger.info(
                "batch status bump skipped",
                extra={"batch_id": str(batch.id), "current": batch.status, "target": target.value},
            )
        return moved

    def advance_confirmed(self, db: Session, batch: Batch, target: BatchStatus) -> bool:
        """Same rule as advance(), applied to the chain-backed confirmed_status."""
        return self._move(db, batch, "confirmed_status", target, self.sources_of(target))
