"""
session_lifecycle.py
---------------------
State machine for import sessions.

    uploading  -> processing | failed | expired
    processing -> completed  | failed | expired

completed, failed and expired are terminal. Any other transition raises
InvalidStateError. Each transition is a conditional UPDATE on the current
status, so two callers racing on the same session cannot both win.

Retention: every session gets expires_at = created + retention_days. The
sweep never touches a session that is processing. Past expiry (and with
auto_cleanup on):
    - uploading sessions are moved to expired;
    - completed / failed / expired sessions are purged together with their
      statement lines and suggestions. Pending transactions the session
      imported or showed are deleted once no other session's lines reference
      them; decided transactions are kept.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict

from sqlalchemy import delete, exists, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from config.config_loader import get_session_config
from core.errors import ConflictError, DuplicateImportError, InvalidStateError, NotFoundError, ValidationError
from core.models import ParsedStatement, ProcessingStage, SessionStatus, TransactionStatus, parse_enum
from storage.tables import ImportSessionRow, StatementLineRow, SuggestionRow, TransactionRow

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.UPLOADING: {SessionStatus.PROCESSING, SessionStatus.FAILED, SessionStatus.EXPIRED},
    SessionStatus.PROCESSING: {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.EXPIRED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
    SessionStatus.EXPIRED: set(),
}

TERMINAL_STATUSES = (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.EXPIRED)


class SessionLifecycleManager:
    """
    Usage:
        sessions = SessionLifecycleManager(session_factory)
        row = sessions.create_session(user_id, "statement.csv", file_hash=digest)
        sessions.start_processing(row.id)
        ...
        sessions.complete(row.id)
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self.retention_days = int(get_session_config().get("retention_days", 7))

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: CREATION & LOOKUP
    # -------------------------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        filename: str,
        file_size: int | None = None,
        file_hash: str | None = None,
        auto_cleanup: bool = True,
    ) -> ImportSessionRow:
        """
        Opens a new session in `uploading`.

        Raises:
            ValidationError: If user_id or filename is missing.
            DuplicateImportError: If the user already imported a file with the
                same hash and that import did not fail.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if not filename:
            raise ValidationError("filename is required")

        with self.session_factory() as db:
            if file_hash:
                previous = db.execute(
                    select(ImportSessionRow)
                    .where(
                        ImportSessionRow.user_id == user_id,
                        ImportSessionRow.file_hash == file_hash,
                        ImportSessionRow.status != SessionStatus.FAILED,
                    )
                    .order_by(ImportSessionRow.created_at.desc())
                ).scalars().first()
                if previous is not None:
                    logger.warning(f"User {user_id}: file {filename!r} already imported in session {previous.id}.")
                    raise DuplicateImportError(
                        f"This file has already been imported (session {previous.id})",
                        existing_session_id=previous.id,
                    )

            row = ImportSessionRow(
                user_id=user_id,
                filename=filename,
                file_size=file_size,
                file_hash=file_hash,
                status=SessionStatus.UPLOADING,
                auto_cleanup=auto_cleanup,
                expires_at=datetime.now() + timedelta(days=self.retention_days),
            )
            db.add(row)
            db.commit()

        logger.info(f"Created import session {row.id} for user {user_id} ({filename}).")
        return row

    def get_session(self, session_id: str, user_id: str | None = None) -> ImportSessionRow:
        """
        Raises:
            NotFoundError: If the session does not exist (or belongs to
                another user when user_id is given).
        """
        with self.session_factory() as db:
            row = db.get(ImportSessionRow, session_id)
            if row is None or (user_id is not None and row.user_id != user_id):
                raise NotFoundError(f"Import session {session_id} not found")
            return row

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: TRANSITIONS
    # -------------------------------------------------------------------------

    def start_processing(self, session_id: str) -> ImportSessionRow:
        """uploading -> processing."""
        return self._transition(session_id, SessionStatus.PROCESSING, processing_stage=ProcessingStage.PDF_PARSING.value)

    def record_statement(self, session_id: str, statement: ParsedStatement) -> None:
        """Stores the bank / account / period the parser detected."""
        values: Dict[str, Any] = {
            "bank_name": statement.bank_name,
            "account_number": statement.account_number,
            "statement_start": statement.statement_start,
            "statement_end": statement.statement_end,
            "updated_at": datetime.now(),
        }
        with self.session_factory() as db:
            updated = db.execute(
                update(ImportSessionRow).where(ImportSessionRow.id == session_id).values(**values)
            ).rowcount
            if updated == 0:
                raise NotFoundError(f"Import session {session_id} not found")
            db.commit()

    def set_stage(self, session_id: str, stage: ProcessingStage | str) -> None:
        """Advisory progress marker. Written whatever the session status is."""
        stage_value = stage.value if isinstance(stage, ProcessingStage) else str(stage)
        with self.session_factory() as db:
            updated = db.execute(
                update(ImportSessionRow)
                .where(ImportSessionRow.id == session_id)
                .values(processing_stage=stage_value, updated_at=datetime.now())
            ).rowcount
            if updated == 0:
                raise NotFoundError(f"Import session {session_id} not found")
            db.commit()
        logger.debug(f"Session {session_id}: stage -> {stage_value}.")

    def complete(self, session_id: str) -> ImportSessionRow:
        """processing -> completed."""
        return self._transition(session_id, SessionStatus.COMPLETED, processing_stage=ProcessingStage.COMPLETE.value)

    def fail(self, session_id: str, error_message: str) -> ImportSessionRow:
        """uploading|processing -> failed, recording why."""
        return self._transition(session_id, SessionStatus.FAILED, error_message=str(error_message))

    def expire(self, session_id: str) -> ImportSessionRow:
        return self._transition(session_id, SessionStatus.EXPIRED)

    def cancel_processing(self, session_id: str, user_id: str | None = None) -> ImportSessionRow:
        """
        Abandons a session that is still processing.

        Raises:
            InvalidStateError: If the session is not processing.
        """
        row = self.get_session(session_id, user_id)
        if row.status != SessionStatus.PROCESSING:
            raise InvalidStateError(
                "Session is not currently processing",
                current=row.status.value,
                requested=SessionStatus.FAILED.value,
            )
        return self._transition(session_id, SessionStatus.FAILED, error_message="Processing cancelled")

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: STATISTICS, DELETION, RETENTION
    # -------------------------------------------------------------------------

    def refresh_statistics(self, session_id: str) -> ImportSessionRow:
        """Recomputes recurring_detected and records_created from stored rows."""
        with self.session_factory() as db:
            row = db.get(ImportSessionRow, session_id)
            if row is None:
                raise NotFoundError(f"Import session {session_id} not found")

            row.recurring_detected = db.execute(
                select(func.count(SuggestionRow.id)).where(SuggestionRow.import_session_id == session_id)
            ).scalar() or 0
            row.records_created = db.execute(
                select(func.count(SuggestionRow.id)).where(
                    SuggestionRow.import_session_id == session_id,
                    SuggestionRow.created_record_id.is_not(None),
                )
            ).scalar() or 0
            db.commit()
            return row

    def delete_session(self, session_id: str, user_id: str) -> None:
        """
        Deletes a session the user no longer wants.

        Raises:
            NotFoundError: If the session does not exist for this user.
            InvalidStateError: If the session is still processing.
            ConflictError: If records were already created from it.
        """
        with self.session_factory() as db:
            row = db.get(ImportSessionRow, session_id)
            if row is None or row.user_id != user_id:
                raise NotFoundError(f"Import session {session_id} not found")
            if row.status == SessionStatus.PROCESSING:
                raise InvalidStateError(
                    "Cannot delete a session while it is processing",
                    current=row.status.value,
                )
            if (row.records_created or 0) > 0 or self._has_decided_transactions(db, session_id):
                raise ConflictError(f"Cannot delete session {session_id}: records were created from it")

            self._purge(db, row)
            db.commit()

        logger.info(f"Deleted import session {session_id} for user {user_id}.")

    def sweep_expired(self, now: datetime | None = None) -> Dict[str, int]:
        """
        Retention sweep. Returns counts of sessions expired and purged.
        """
        now = now or datetime.now()
        expired = purged = 0

        with self.session_factory() as db:
            due = db.execute(
                select(ImportSessionRow).where(
                    ImportSessionRow.expires_at <= now,
                    ImportSessionRow.auto_cleanup.is_(True),
                    ImportSessionRow.status != SessionStatus.PROCESSING,
                )
            ).scalars().all()

            for row in due:
                if row.status == SessionStatus.UPLOADING:
                    moved = db.execute(
                        update(ImportSessionRow)
                        .where(ImportSessionRow.id == row.id, ImportSessionRow.status == SessionStatus.UPLOADING)
                        .values(status=SessionStatus.EXPIRED, updated_at=now)
                    ).rowcount
                    expired += moved
                elif row.status in TERMINAL_STATUSES:
                    self._purge(db, row)
                    purged += 1

            db.commit()

        logger.info(f"Retention sweep at {now:%Y-%m-%d %H:%M}: {expired} expired, {purged} purged.")
        return {"expired": expired, "purged": purged}

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _transition(self, session_id: str, target: SessionStatus, **values) -> ImportSessionRow:
        """Conditional UPDATE from any status allowed to reach `target`."""
        target = parse_enum(SessionStatus, target, "status")
        sources = [status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets]

        with self.session_factory() as db:
            updated = db.execute(
                update(ImportSessionRow)
                .where(ImportSessionRow.id == session_id, ImportSessionRow.status.in_(sources))
                .values(status=target, updated_at=datetime.now(), **values)
            ).rowcount

            if updated == 0:
                current = self._current_status(db, session_id)
                raise InvalidStateError(
                    f"Invalid session transition {current.value} -> {target.value}",
                    current=current.value,
                    requested=target.value,
                )
            db.commit()

            row = db.get(ImportSessionRow, session_id)

        if target == SessionStatus.FAILED:
            logger.warning(f"Session {session_id} failed: {row.error_message}")
        else:
            logger.info(f"Session {session_id}: -> {target.value}.")
        return row

    @staticmethod
    def _current_status(db: Session, session_id: str) -> SessionStatus:
        status = db.execute(select(ImportSessionRow.status).where(ImportSessionRow.id == session_id)).scalar()
        if status is None:
            raise NotFoundError(f"Import session {session_id} not found")
        return parse_enum(SessionStatus, status, "status")

    @staticmethod
    def _has_decided_transactions(db: Session, session_id: str) -> bool:
        return bool(db.execute(
            select(func.count(TransactionRow.id)).where(
                TransactionRow.import_session_id == session_id,
                TransactionRow.status == TransactionStatus.RECORD_CREATED,
            )
        ).scalar())

    @staticmethod
    def _purge(db: Session, row: ImportSessionRow) -> None:
        """
        Removes a session with its lines and suggestions, plus the pending
        transactions it imported or showed that no other session still shows.
        """
        session_id = row.id
        shown_here = select(StatementLineRow.transaction_id).where(StatementLineRow.import_session_id == session_id)
        referenced_elsewhere = exists().where(
            StatementLineRow.transaction_id == TransactionRow.id,
            StatementLineRow.import_session_id != session_id,
        )
        orphan_ids = db.execute(
            select(TransactionRow.id).where(
                or_(TransactionRow.import_session_id == session_id, TransactionRow.id.in_(shown_here)),
                TransactionRow.status == TransactionStatus.PENDING,
                ~referenced_elsewhere,
            )
        ).scalars().all()

        db.delete(row)
        db.flush()

        if orphan_ids:
            db.execute(
                delete(TransactionRow)
                .where(TransactionRow.id.in_(orphan_ids))
                .execution_options(synchronize_session=False)
            )
        logger.debug(f"Purged session {session_id} ({len(orphan_ids)} pending transactions removed).")
