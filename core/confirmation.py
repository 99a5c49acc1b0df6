"""
confirmation.py
----------------
User decisions on recurring-payment suggestions.

Accepting a suggestion creates exactly one downstream financial record:

    0. Guard: if none of its transactions is still pending (a later statement
       repeating a bill that was accepted already), ConflictError.
    1. Claim: conditional UPDATE pending -> accepted. Whoever loses the race
       (or calls twice) gets ConflictError and nothing else happens.
    2. Create: one RecordStore.create_record() call.
    3. If the store fails, the claim is rolled back to pending and the error
       propagates. The accept did not happen.
    4. Otherwise the record id is stored on the suggestion and every member
       transaction that is still pending moves to record_created.

Rejecting only flips pending -> rejected.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import exists, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from config.config_loader import get_downstream_config, get_ingestion_config
from core.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from core.models import (
    AmountPattern,
    ImportMetadata,
    RecordRequest,
    SessionStatus,
    SuggestedEntry,
    SuggestionStatus,
    TransactionStatus,
)
from core.transaction_lifecycle import mark_pending_as_created
from storage.tables import ImportSessionRow, SuggestionRow, TransactionRow

logger = logging.getLogger(__name__)

MODIFIABLE_FIELDS = ("title", "provider", "type")


# =============================================================================
# DOWNSTREAM RECORD STORE
# =============================================================================

class RecordStore(ABC):
    """The external store financial records are created in."""

    @abstractmethod
    def create_record(self, request: RecordRequest) -> str:
        """Persists one record and returns its id."""


class InMemoryRecordStore(RecordStore):
    """Keeps created records in a dict. Used by the CLI and tests."""

    def __init__(self):
        self.records: Dict[str, RecordRequest] = {}

    def create_record(self, request: RecordRequest) -> str:
        record_id = str(uuid.uuid4())
        self.records[record_id] = request
        logger.info(f"Created {request.domain}/{request.record_type} record {record_id}: {request.title!r}.")
        return record_id


# =============================================================================
# CONFIRMATION
# =============================================================================

@dataclass
class ConfirmationSummary:
    created_records: List[Dict[str, Any]] = field(default_factory=list)   # {suggestion_index, record_id}
    rejected_suggestions: List[int] = field(default_factory=list)


class ConfirmationHandler:
    """
    Usage:
        handler = ConfirmationHandler(session_factory, record_store)
        record_id = handler.accept(user_id, session_id, 0, {"title": "Gas bill"})
        handler.reject(user_id, session_id, 1)
    """

    def __init__(self, session_factory: sessionmaker, record_store: RecordStore):
        self.session_factory = session_factory
        self.record_store = record_store
        self.downstream = get_downstream_config()
        self.currency = get_ingestion_config().get("currency", "GBP")

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def accept(self, user_id: str, session_id: str, index: int, modifications: Optional[Dict[str, Any]] = None) -> str:
        """
        Accepts one suggestion and creates its downstream record.

        Returns:
            The created record id.

        Raises:
            NotFoundError: Unknown session (for this user) or index.
            InvalidStateError: Session is not completed.
            ValidationError: Unknown modification field or entry type.
            ConflictError: The suggestion is no longer pending, or none of its
                transactions is pending any more.
        """
        modifications = self._validate_modifications(modifications)

        with self.session_factory() as db:
            import_session = self._completed_session(db, user_id, session_id)
            suggestion = self._suggestion_at(db, session_id, index)
            previous = {
                "suggested_title": suggestion.suggested_title,
                "suggested_provider": suggestion.suggested_provider,
                "suggested_type": suggestion.suggested_type,
                "user_modifications": suggestion.user_modifications,
            }

            if suggestion.status == SuggestionStatus.PENDING and not self._has_pending_member(db, user_id, suggestion.transaction_ids):
                raise ConflictError(
                    f"Suggestion {index} has no pending transactions left; they already belong to another record"
                )

            # --- Claim ---
            values: Dict[str, Any] = {"status": SuggestionStatus.ACCEPTED, "resolved_at": datetime.now()}
            if modifications:
                entry = SuggestedEntry(
                    title=modifications.get("title", suggestion.suggested_title or ""),
                    provider=modifications.get("provider", suggestion.suggested_provider or ""),
                    type=modifications.get("type", suggestion.suggested_type),
                )
                values.update(
                    suggested_title=entry.title,
                    suggested_provider=entry.provider,
                    suggested_type=entry.type,
                    user_modifications=modifications,
                )
            self._claim(db, suggestion, values)
            db.commit()
            db.refresh(suggestion)

            # --- Create ---
            request = self._build_request(user_id, import_session, suggestion)
            try:
                record_id = self.record_store.create_record(request)
            except Exception:
                logger.exception(f"Record creation failed for suggestion {index} of session {session_id}; reverting.")
                db.execute(
                    update(SuggestionRow)
                    .where(SuggestionRow.id == suggestion.id, SuggestionRow.status == SuggestionStatus.ACCEPTED)
                    .values(status=SuggestionStatus.PENDING, resolved_at=None, **previous)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                raise

            # --- Link ---
            suggestion.created_record_id = record_id
            member_ids = suggestion.transaction_ids
            moved = mark_pending_as_created(db, user_id, member_ids, record_id, request.domain)
            db.execute(
                update(ImportSessionRow)
                .where(ImportSessionRow.id == import_session.id)
                .values(records_created=func.coalesce(ImportSessionRow.records_created, 0) + 1)
                .execution_options(synchronize_session=False)
            )
            db.commit()

        skipped = len(member_ids) - moved
        if skipped:
            logger.info(f"Suggestion {index}: {skipped} member transactions were not pending and kept their status.")
        logger.info(f"Session {session_id}: accepted suggestion {index} -> record {record_id}.")
        return record_id

    def reject(self, user_id: str, session_id: str, index: int) -> None:
        """
        Rejects one suggestion. No record, no transaction changes.

        Raises:
            NotFoundError, InvalidStateError, ConflictError: As for accept().
        """
        with self.session_factory() as db:
            self._completed_session(db, user_id, session_id)
            suggestion = self._suggestion_at(db, session_id, index)
            self._claim(db, suggestion, {"status": SuggestionStatus.REJECTED, "resolved_at": datetime.now()})
            db.commit()
        logger.info(f"Session {session_id}: rejected suggestion {index}.")

    def accept_all(self, user_id: str, session_id: str) -> ConfirmationSummary:
        """Accepts every suggestion that is still pending."""
        summary = ConfirmationSummary()
        for index in self._pending_indexes(user_id, session_id):
            try:
                record_id = self.accept(user_id, session_id, index)
            except ConflictError as exc:
                logger.info(f"Suggestion {index} skipped: {exc}")
                continue
            summary.created_records.append({"suggestion_index": index, "record_id": record_id})
        return summary

    def reject_all(self, user_id: str, session_id: str) -> ConfirmationSummary:
        """Rejects every suggestion that is still pending."""
        summary = ConfirmationSummary()
        for index in self._pending_indexes(user_id, session_id):
            try:
                self.reject(user_id, session_id, index)
            except ConflictError:
                logger.info(f"Suggestion {index} resolved concurrently; skipping.")
                continue
            summary.rejected_suggestions.append(index)
        return summary

    def confirm(
        self,
        user_id: str,
        session_id: str,
        confirmations: Optional[List[Dict[str, Any]]] = None,
        bulk_action: Optional[str] = None,
    ) -> ConfirmationSummary:
        """
        Batch form. Either bulk_action ("accept_all" / "reject_all") or a list
        of {"suggestion_index", "action": "accept"|"reject", "modifications"}.
        Stops at the first failing item; earlier items stay applied.
        """
        if bulk_action == "accept_all":
            return self.accept_all(user_id, session_id)
        if bulk_action == "reject_all":
            return self.reject_all(user_id, session_id)
        if bulk_action is not None:
            raise ValidationError(f"Unknown bulk_action {bulk_action!r}")

        summary = ConfirmationSummary()
        for item in confirmations or []:
            index = item.get("suggestion_index")
            action = item.get("action")
            if not isinstance(index, int):
                raise ValidationError(f"suggestion_index must be an integer, got {index!r}")
            if action == "accept":
                record_id = self.accept(user_id, session_id, index, item.get("modifications"))
                summary.created_records.append({"suggestion_index": index, "record_id": record_id})
            elif action == "reject":
                self.reject(user_id, session_id, index)
                summary.rejected_suggestions.append(index)
            else:
                raise ValidationError(f"Unknown action {action!r} for suggestion {index}")
        return summary

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate_modifications(modifications: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not modifications:
            return {}
        unknown = set(modifications) - set(MODIFIABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot modify {sorted(unknown)}. Allowed: {list(MODIFIABLE_FIELDS)}")
        cleaned = dict(modifications)
        if "type" in cleaned:
            cleaned["type"] = SuggestedEntry(title="", provider="", type=cleaned["type"]).type.value
        return cleaned

    @staticmethod
    def _completed_session(db: Session, user_id: str, session_id: str) -> ImportSessionRow:
        row = db.get(ImportSessionRow, session_id)
        if row is None or row.user_id != user_id:
            raise NotFoundError(f"Import session {session_id} not found")
        if row.status != SessionStatus.COMPLETED:
            raise InvalidStateError(
                "Import session is not ready for confirmation",
                current=row.status.value,
                requested=SessionStatus.COMPLETED.value,
            )
        return row

    @staticmethod
    def _suggestion_at(db: Session, session_id: str, index: int) -> SuggestionRow:
        suggestion = db.execute(
            select(SuggestionRow).where(
                SuggestionRow.import_session_id == session_id,
                SuggestionRow.position == index,
            )
        ).scalar_one_or_none()
        if suggestion is None:
            raise NotFoundError(f"Invalid suggestion index: {index}")
        return suggestion

    @staticmethod
    def _has_pending_member(db: Session, user_id: str, transaction_ids: List[str]) -> bool:
        if not transaction_ids:
            return False
        return bool(db.execute(
            select(exists().where(
                TransactionRow.id.in_(transaction_ids),
                TransactionRow.user_id == user_id,
                TransactionRow.status == TransactionStatus.PENDING,
            ))
        ).scalar())

    @staticmethod
    def _claim(db: Session, suggestion: SuggestionRow, values: Dict[str, Any]) -> None:
        """pending -> values["status"], or ConflictError if someone got there first."""
        claimed = db.execute(
            update(SuggestionRow)
            .where(SuggestionRow.id == suggestion.id, SuggestionRow.status == SuggestionStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed == 0:
            db.rollback()
            current = db.execute(select(SuggestionRow.status).where(SuggestionRow.id == suggestion.id)).scalar()
            raise ConflictError(f"Suggestion {suggestion.position} is already {SuggestionStatus(current).value}")

    def _pending_indexes(self, user_id: str, session_id: str) -> List[int]:
        with self.session_factory() as db:
            self._completed_session(db, user_id, session_id)
            return list(db.execute(
                select(SuggestionRow.position)
                .where(
                    SuggestionRow.import_session_id == session_id,
                    SuggestionRow.status == SuggestionStatus.PENDING,
                )
                .order_by(SuggestionRow.position)
            ).scalars().all())

    def _build_request(self, user_id: str, import_session: ImportSessionRow, suggestion: SuggestionRow) -> RecordRequest:
        mapping = self.downstream["domain_mapping"].get(
            suggestion.category.value, {"domain": "finance", "record_type": "other"}
        )
        typical_amount = abs(float(suggestion.amount))
        entry = suggestion.suggested_entry

        return RecordRequest(
            user_id=user_id,
            title=entry.title or f"{suggestion.payee} - {suggestion.category.value}",
            provider=entry.provider or suggestion.payee,
            record_type=mapping["record_type"],
            domain=mapping["domain"],
            amount=typical_amount,
            notes=(
                f"Created from Bank Import\n"
                f"Original payee: {suggestion.payee}\n"
                f"Category: {suggestion.category.value}\n"
                f"Confidence: {suggestion.confidence}"
            ),
            import_metadata=ImportMetadata(
                import_session_id=import_session.id,
                original_payee=suggestion.payee,
                confidence_score=suggestion.confidence,
                detected_frequency=suggestion.frequency.value,
                amount_pattern=AmountPattern(
                    typical_amount=typical_amount,
                    variance=float(self.downstream.get("amount_variance", 0.1)),
                    currency=self.currency,
                ),
            ),
        )
