"""
queries.py
-----------
Read-side query surface over the reconciliation tables.

Every function takes an open SQLAlchemy Session and returns ORM rows or
domain objects. Nothing here writes.
"""

from datetime import date, timedelta
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from core.models import Occurrence, SessionStatus, TransactionStatus, parse_enum
from core.normalization import normalize_description
from storage.tables import ImportSessionRow, StatementLineRow, SuggestionRow, TransactionRow


def list_sessions(
    db: Session,
    user_id: str,
    status: SessionStatus | str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> List[ImportSessionRow]:
    """User's import sessions, newest first."""
    stmt = select(ImportSessionRow).where(ImportSessionRow.user_id == user_id)
    if status is not None:
        stmt = stmt.where(ImportSessionRow.status == parse_enum(SessionStatus, status, "status"))
    stmt = stmt.order_by(ImportSessionRow.created_at.desc(), ImportSessionRow.id).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars().all())


def count_sessions(db: Session, user_id: str, status: SessionStatus | str | None = None) -> int:
    stmt = select(func.count(ImportSessionRow.id)).where(ImportSessionRow.user_id == user_id)
    if status is not None:
        stmt = stmt.where(ImportSessionRow.status == parse_enum(SessionStatus, status, "status"))
    return int(db.execute(stmt).scalar() or 0)


def list_transactions(
    db: Session,
    user_id: str,
    status: TransactionStatus | str | None = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    session_id: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[TransactionRow]:
    """
    Canonical transactions for a user, newest first.

    session_id restricts to transactions that appear in that session's
    statement (including ones first imported by an earlier session).
    search is a case-insensitive substring match on the description.
    """
    stmt = select(TransactionRow).where(TransactionRow.user_id == user_id)

    if status is not None:
        stmt = stmt.where(TransactionRow.status == parse_enum(TransactionStatus, status, "status"))
    if date_from is not None:
        stmt = stmt.where(TransactionRow.date >= date_from)
    if date_to is not None:
        stmt = stmt.where(TransactionRow.date <= date_to)
    if session_id is not None:
        in_session = select(StatementLineRow.transaction_id).where(StatementLineRow.import_session_id == session_id)
        stmt = stmt.where(TransactionRow.id.in_(in_session))
    if search:
        needle = f"%{normalize_description(search)}%"
        stmt = stmt.where(or_(
            func.upper(TransactionRow.description).like(needle),
            func.upper(TransactionRow.reference).like(needle),
        ))

    stmt = stmt.order_by(TransactionRow.date.desc(), TransactionRow.id).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars().all())


def session_transactions(db: Session, session_id: str) -> List[TransactionRow]:
    """Distinct canonical transactions referenced by a session's lines, by first line."""
    first_line = (
        select(StatementLineRow.transaction_id, func.min(StatementLineRow.line_number).label("first_line"))
        .where(StatementLineRow.import_session_id == session_id)
        .group_by(StatementLineRow.transaction_id)
        .subquery()
    )
    stmt = (
        select(TransactionRow)
        .join(first_line, first_line.c.transaction_id == TransactionRow.id)
        .order_by(first_line.c.first_line)
    )
    return list(db.execute(stmt).scalars().all())


def session_lines(db: Session, session_id: str) -> List[StatementLineRow]:
    stmt = (
        select(StatementLineRow)
        .where(StatementLineRow.import_session_id == session_id)
        .order_by(StatementLineRow.line_number)
    )
    return list(db.execute(stmt).scalars().all())


def find_transaction_by_hash(db: Session, user_id: str, transaction_hash: str) -> TransactionRow | None:
    return db.execute(
        select(TransactionRow).where(
            TransactionRow.user_id == user_id,
            TransactionRow.transaction_hash == transaction_hash,
        )
    ).scalar_one_or_none()


def session_occurrences(
    db: Session,
    user_id: str,
    session_id: str,
    lookback_days: Optional[int] = None,
) -> List[Occurrence]:
    """
    Dated occurrences for recurrence grouping.

    Always includes every line of the session. With lookback_days, lines from
    the user's other sessions dated within that many days before the
    session's latest line are added. Lines of ignored transactions are left
    out.
    """
    scope = StatementLineRow.import_session_id == session_id

    if lookback_days is not None:
        latest = db.execute(select(func.max(StatementLineRow.date)).where(scope)).scalar()
        if latest is not None:
            cutoff = latest - timedelta(days=int(lookback_days))
            other_sessions = select(ImportSessionRow.id).where(ImportSessionRow.user_id == user_id)
            scope = or_(
                scope,
                StatementLineRow.import_session_id.in_(other_sessions)
                & (StatementLineRow.date >= cutoff)
                & (StatementLineRow.date <= latest),
            )

    stmt = (
        select(StatementLineRow, TransactionRow)
        .join(TransactionRow, StatementLineRow.transaction_id == TransactionRow.id)
        .where(scope)
        .where(TransactionRow.user_id == user_id)
        .where(TransactionRow.status != TransactionStatus.IGNORED)
        .order_by(StatementLineRow.date, StatementLineRow.id)
    )

    occurrences = []
    for line, transaction in db.execute(stmt).all():
        occurrences.append(Occurrence(
            line_id=line.id,
            transaction_id=transaction.id,
            date=line.date,
            description=line.description,
            amount=float(line.amount),
            original_text=line.original_text,
            pattern_matched=bool(transaction.pattern_matched),
            pattern_confidence=float(transaction.pattern_confidence or 0.0),
            pattern_id=transaction.pattern_id,
            transaction_status=transaction.status,
        ))
    return occurrences


def session_suggestions(db: Session, session_id: str) -> List[SuggestionRow]:
    """A session's suggestions in position order, members loaded."""
    stmt = (
        select(SuggestionRow)
        .where(SuggestionRow.import_session_id == session_id)
        .options(selectinload(SuggestionRow.transactions))
        .order_by(SuggestionRow.position)
    )
    return list(db.execute(stmt).scalars().all())
