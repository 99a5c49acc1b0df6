"""
transaction_lifecycle.py
-------------------------
Per-transaction status transitions.

    pending -> record_created     (terminal)
    pending -> ignored
    ignored -> pending            (undo; the only reverse transition)

Every transition is a single conditional UPDATE guarded on the current
status. If the guard does not hold, nothing is written and
InvalidStateError is raised; an unknown id, or one owned by another user,
raises NotFoundError.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from core.errors import InvalidStateError, NotFoundError, ValidationError
from core.models import TransactionStatus
from storage.tables import TransactionRow

logger = logging.getLogger(__name__)


def mark_pending_as_created(db: Session, user_id: str, transaction_ids: Iterable[str], record_id: str, domain: str) -> int:
    """
    Moves every still-pending transaction in transaction_ids to
    record_created inside the caller's session. Returns how many moved.
    """
    ids = list(transaction_ids)
    if not ids:
        return 0
    return db.execute(
        update(TransactionRow)
        .where(
            TransactionRow.id.in_(ids),
            TransactionRow.user_id == user_id,
            TransactionRow.status == TransactionStatus.PENDING,
        )
        .values(
            status=TransactionStatus.RECORD_CREATED,
            record_created=True,
            created_record_id=record_id,
            created_record_domain=domain,
            record_created_at=datetime.now(),
            updated_at=datetime.now(),
        )
        .execution_options(synchronize_session=False)
    ).rowcount


class TransactionLifecycle:
    """
    Usage:
        lifecycle = TransactionLifecycle(session_factory)
        lifecycle.ignore(user_id, transaction_id, "Not a bill")
        lifecycle.undo_ignore(user_id, transaction_id)
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def mark_record_created(self, user_id: str, transaction_id: str, record_id: str, domain: str) -> TransactionRow:
        """pending -> record_created, linking the downstream record."""
        if not record_id:
            raise ValidationError("record_id is required")
        with self.session_factory() as db:
            moved = mark_pending_as_created(db, user_id, [transaction_id], record_id, domain)
            return self._finish(db, user_id, transaction_id, moved, TransactionStatus.RECORD_CREATED)

    def ignore(self, user_id: str, transaction_id: str, reason: str | None = None) -> TransactionRow:
        """pending -> ignored."""
        with self.session_factory() as db:
            moved = self._ignore_rows(db, user_id, [transaction_id], reason)
            return self._finish(db, user_id, transaction_id, moved, TransactionStatus.IGNORED)

    def undo_ignore(self, user_id: str, transaction_id: str) -> TransactionRow:
        """ignored -> pending. Clears the ignore reason and timestamp."""
        with self.session_factory() as db:
            moved = db.execute(
                update(TransactionRow)
                .where(
                    TransactionRow.id == transaction_id,
                    TransactionRow.user_id == user_id,
                    TransactionRow.status == TransactionStatus.IGNORED,
                )
                .values(
                    status=TransactionStatus.PENDING,
                    ignored_reason=None,
                    ignored_at=None,
                    updated_at=datetime.now(),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            return self._finish(db, user_id, transaction_id, moved, TransactionStatus.PENDING)

    def bulk_ignore(self, user_id: str, transaction_ids: Iterable[str], reason: str | None = None) -> int:
        """
        Ignores every listed transaction that is still pending. Others are
        left alone. Returns how many were ignored.
        """
        ids = list(transaction_ids)
        if not ids:
            raise ValidationError("transaction_ids must not be empty")
        with self.session_factory() as db:
            moved = self._ignore_rows(db, user_id, ids, reason)
            db.commit()
        logger.info(f"User {user_id}: bulk-ignored {moved} of {len(ids)} transactions.")
        return moved

    def status_counts(self, user_id: str) -> Dict[str, int]:
        """Transaction counts per status, with zero for unused statuses."""
        counts = {status.value: 0 for status in TransactionStatus}
        with self.session_factory() as db:
            rows = db.execute(
                select(TransactionRow.status, func.count(TransactionRow.id))
                .where(TransactionRow.user_id == user_id)
                .group_by(TransactionRow.status)
            ).all()
        for status, count in rows:
            counts[TransactionStatus(status).value] = count
        counts["total"] = sum(counts.values())
        return counts

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _ignore_rows(db: Session, user_id: str, ids: list[str], reason: str | None) -> int:
        return db.execute(
            update(TransactionRow)
            .where(
                TransactionRow.id.in_(ids),
                TransactionRow.user_id == user_id,
                TransactionRow.status == TransactionStatus.PENDING,
            )
            .values(
                status=TransactionStatus.IGNORED,
                ignored_reason=reason,
                ignored_at=datetime.now(),
                updated_at=datetime.now(),
            )
            .execution_options(synchronize_session=False)
        ).rowcount

    @staticmethod
    def _finish(db: Session, user_id: str, transaction_id: str, moved: int, target: TransactionStatus) -> TransactionRow:
        """Commits a successful guarded update or explains why it did not apply."""
        row = db.get(TransactionRow, transaction_id)
        if row is None or row.user_id != user_id:
            db.rollback()
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if moved == 0:
            db.rollback()
            raise InvalidStateError(
                f"Cannot move transaction {transaction_id} from {row.status.value} to {target.value}",
                current=row.status.value,
                requested=target.value,
            )
        db.commit()
        db.refresh(row)
        logger.info(f"Transaction {transaction_id}: -> {target.value}.")
        return row
