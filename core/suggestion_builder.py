"""
suggestion_builder.py
----------------------
Turns qualifying TransactionGroups into recurring-payment suggestions on an
import session.

Re-running the builder for the same session is safe: suggestions are keyed
by (session, group_key). A still-pending suggestion is refreshed in place, a
resolved one is left exactly as the user decided it, and a new group is
appended after the existing positions. A group whose member transactions
all have a record already (accepted through an earlier statement) does not
become a new suggestion.
"""

import logging
from collections import Counter
from decimal import Decimal
from typing import List

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from core.errors import NotFoundError
from core.models import (
    CATEGORY_ENTRY_TYPES,
    Category,
    DetectionRuleSet,
    EntryType,
    SuggestedEntry,
    SuggestionStatus,
    TransactionGroup,
    TransactionStatus,
)
from core.normalization import extract_payee_name
from storage.tables import ImportSessionRow, SuggestionMemberRow, SuggestionRow

logger = logging.getLogger(__name__)


def dominant_payee(group: TransactionGroup) -> str:
    """Most common extracted payee among the group's members (first seen wins ties)."""
    counts = Counter(extract_payee_name(m.description) for m in group.members)
    return counts.most_common(1)[0][0] if counts else ""


def entry_title(provider: str | None, subcategory: str | None, payee: str, category: Category) -> str:
    """
    "British Gas - gas", "British Gas", or "Acme Gym - Service" for the
    uncategorised case.
    """
    if provider and subcategory:
        return f"{provider} - {subcategory}"
    if provider:
        return provider
    label = "Service" if category == Category.OTHER else category.value
    return f"{payee} - {label}"


def entry_type_for(category: Category) -> EntryType:
    return CATEGORY_ENTRY_TYPES.get(category, EntryType.OTHER)


class SuggestionBuilder:
    """
    Usage:
        builder = SuggestionBuilder(session_factory)
        suggestions = builder.build(session_id, groups, rule_set)
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def build(self, session_id: str, groups: List[TransactionGroup], rule_set: DetectionRuleSet) -> List[SuggestionRow]:
        """
        Creates or refreshes suggestions for the groups that clear the rule
        set's min_confidence_threshold.

        Returns:
            The session's suggestions in position order.

        Raises:
            NotFoundError: If the session does not exist.
        """
        threshold = rule_set.settings.min_confidence_threshold
        created = refreshed = skipped = 0

        with self.session_factory() as db:
            import_session = db.get(ImportSessionRow, session_id)
            if import_session is None:
                raise NotFoundError(f"Import session {session_id} not found")

            next_position = self._next_position(db, session_id)

            for group in groups:
                if group.confidence < threshold:
                    logger.debug(f"Dropping {group.group_key}: confidence {group.confidence} < {threshold}.")
                    continue

                existing = db.execute(
                    select(SuggestionRow).where(
                        SuggestionRow.import_session_id == session_id,
                        SuggestionRow.group_key == group.group_key,
                    )
                ).scalar_one_or_none()

                if existing is None:
                    if not any(m.transaction_status == TransactionStatus.PENDING for m in group.members):
                        logger.debug(f"Dropping {group.group_key}: no member transaction is still pending.")
                        continue
                    suggestion = SuggestionRow(import_session_id=session_id, position=next_position, group_key=group.group_key)
                    next_position += 1
                    self._apply_group(suggestion, group, rule_set)
                    db.add(suggestion)
                    created += 1
                elif existing.status == SuggestionStatus.PENDING:
                    self._apply_group(existing, group, rule_set)
                    refreshed += 1
                else:
                    skipped += 1

            db.flush()
            import_session.recurring_detected = db.execute(
                select(func.count(SuggestionRow.id)).where(SuggestionRow.import_session_id == session_id)
            ).scalar()
            db.commit()

            suggestions = db.execute(
                select(SuggestionRow)
                .where(SuggestionRow.import_session_id == session_id)
                .order_by(SuggestionRow.position)
            ).scalars().all()
            for suggestion in suggestions:
                # Load members before the session closes.
                suggestion.transactions

        logger.info(
            f"Session {session_id}: {created} suggestions created, {refreshed} refreshed, "
            f"{skipped} already resolved."
        )
        return list(suggestions)

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _next_position(db: Session, session_id: str) -> int:
        current = db.execute(
            select(func.max(SuggestionRow.position)).where(SuggestionRow.import_session_id == session_id)
        ).scalar()
        return 0 if current is None else current + 1

    @staticmethod
    def _apply_group(suggestion: SuggestionRow, group: TransactionGroup, rule_set: DetectionRuleSet) -> None:
        rule = rule_set.get_rule(group.rule_id)
        provider = rule.provider if rule else None
        subcategory = rule.subcategory if rule else None
        payee = provider or dominant_payee(group)

        entry = SuggestedEntry(
            title=entry_title(provider, subcategory, payee, group.category),
            provider=payee,
            type=entry_type_for(group.category),
        )

        suggestion.payee = payee
        suggestion.category = group.category
        suggestion.subcategory = subcategory
        suggestion.amount = Decimal(str(group.median_amount))
        suggestion.frequency = group.frequency
        suggestion.confidence = group.confidence
        suggestion.suggested_title = entry.title
        suggestion.suggested_provider = entry.provider
        suggestion.suggested_type = entry.type
        suggestion.transactions = [
            SuggestionMemberRow(
                statement_line_id=member.line_id,
                transaction_id=member.transaction_id,
                date=member.date,
                description=member.description,
                amount=Decimal(str(member.amount)),
                original_text=member.original_text,
            )
            for member in group.members
        ]
