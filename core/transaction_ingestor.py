"""
transaction_ingestor.py
------------------------
Turns parsed statement lines into canonical transactions.

For every line:
    1. Validate the required fields (date, description, amount). A bad line
       is recorded as a LineError and the batch carries on.
    2. Fingerprint it: sha256(user, amount, normalised description).
    3. If the user already has a transaction with that fingerprint, the line
       is a duplicate: nothing new is stored, total_transactions is not
       incremented, but the line still links the existing transaction into
       this session's view.
    4. Otherwise insert a new pending transaction. The insert runs inside a
       SAVEPOINT; if a concurrent ingestion won the race, the unique
       constraint fires and the line is treated as already imported.

Session statistics (debits, credits, date range) are recomputed from the
session's statement lines after the batch.
"""

import logging
from typing import Any, Dict, Iterable

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from core.errors import NotFoundError, ValidationError
from core.models import IngestResult, LineError, ParsedLine, TransactionStatus
from core.normalization import transaction_fingerprint
from storage.tables import ImportSessionRow, StatementLineRow, TransactionRow

logger = logging.getLogger(__name__)


class TransactionIngestor:
    """
    Persists parsed lines for one (user, import session) pair.

    Usage:
        ingestor = TransactionIngestor(session_factory)
        result = ingestor.ingest(user_id, session_id, parsed_lines)
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def ingest(self, user_id: str, session_id: str, lines: Iterable[Dict[str, Any] | ParsedLine]) -> IngestResult:
        """
        Ingest an ordered batch of parsed lines.

        Raises:
            ValidationError: If user_id or session_id is missing.
            NotFoundError: If the session does not exist for this user.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if not session_id:
            raise ValidationError("session_id is required")

        result = IngestResult(session_id=session_id)

        with self.session_factory() as db:
            import_session = db.get(ImportSessionRow, session_id)
            if import_session is None or import_session.user_id != user_id:
                raise NotFoundError(f"Import session {session_id} not found")

            next_line = self._next_line_number(db, session_id)

            for offset, raw in enumerate(lines):
                line_number = next_line + offset
                try:
                    line = raw if isinstance(raw, ParsedLine) else ParsedLine.from_mapping(raw)
                except ValidationError as exc:
                    logger.warning(f"Session {session_id}: line {line_number} rejected: {exc}")
                    result.errors.append(LineError(line_number=line_number, message=str(exc)))
                    continue

                transaction, created = self._store_transaction(db, user_id, session_id, line)
                db.add(StatementLineRow(
                    import_session_id=session_id,
                    transaction_id=transaction.id,
                    line_number=line_number,
                    date=line.date,
                    description=line.description,
                    amount=line.amount,
                    balance=line.balance,
                    original_text=line.original_text,
                    is_duplicate=not created,
                ))

                if created:
                    result.new_transaction_ids.append(transaction.id)
                else:
                    result.duplicate_transaction_ids.append(transaction.id)

            db.flush()
            import_session.total_transactions = (import_session.total_transactions or 0) + len(result.new_transaction_ids)
            import_session.duplicate_transactions = (import_session.duplicate_transactions or 0) + len(result.duplicate_transaction_ids)
            self._refresh_line_statistics(db, import_session)
            db.commit()

            result.statistics = import_session.statistics

        logger.info(
            f"Session {session_id}: ingested {result.lines_accepted} lines "
            f"({len(result.new_transaction_ids)} new, {len(result.duplicate_transaction_ids)} duplicate, "
            f"{len(result.errors)} rejected)."
        )
        return result

    # -------------------------------------------------------------------------
    # INTERNAL: DEDUPLICATION
    # -------------------------------------------------------------------------

    def _store_transaction(self, db: Session, user_id: str, session_id: str, line: ParsedLine) -> tuple[TransactionRow, bool]:
        """Returns (transaction, created)."""
        tx_hash = transaction_fingerprint(user_id, line.amount, line.description)

        existing = self._find_by_hash(db, user_id, tx_hash)
        if existing is not None:
            return existing, False

        transaction = TransactionRow(
            user_id=user_id,
            import_session_id=session_id,
            date=line.date,
            description=line.description,
            reference=line.reference,
            amount=line.amount,
            balance=line.balance,
            original_text=line.original_text,
            transaction_hash=tx_hash,
            status=TransactionStatus.PENDING,
        )
        try:
            with db.begin_nested():
                db.add(transaction)
        except IntegrityError:
            # Another ingestion pass stored the same transaction first.
            logger.info(f"Transaction {tx_hash[:12]} stored concurrently; treating as already imported.")
            existing = self._find_by_hash(db, user_id, tx_hash)
            if existing is None:
                raise
            return existing, False

        return transaction, True

    @staticmethod
    def _find_by_hash(db: Session, user_id: str, tx_hash: str) -> TransactionRow | None:
        return db.execute(
            select(TransactionRow).where(
                TransactionRow.user_id == user_id,
                TransactionRow.transaction_hash == tx_hash,
            )
        ).scalar_one_or_none()

    # -------------------------------------------------------------------------
    # INTERNAL: STATISTICS
    # -------------------------------------------------------------------------

    @staticmethod
    def _next_line_number(db: Session, session_id: str) -> int:
        current = db.execute(
            select(func.max(StatementLineRow.line_number)).where(StatementLineRow.import_session_id == session_id)
        ).scalar()
        return (current or 0) + 1

    @staticmethod
    def _refresh_line_statistics(db: Session, import_session: ImportSessionRow) -> None:
        """Debit/credit totals and date span over all of the session's lines."""
        debits, credits, first_date, last_date = db.execute(
            select(
                func.coalesce(func.sum(case((StatementLineRow.amount < 0, -StatementLineRow.amount), else_=0)), 0),
                func.coalesce(func.sum(case((StatementLineRow.amount > 0, StatementLineRow.amount), else_=0)), 0),
                func.min(StatementLineRow.date),
                func.max(StatementLineRow.date),
            ).where(StatementLineRow.import_session_id == import_session.id)
        ).one()

        import_session.total_debits = round(float(debits), 2)
        import_session.total_credits = round(float(credits), 2)
        import_session.date_range_days = (last_date - first_date).days if first_date and last_date else 0
