"""
tables.py
----------
SQLAlchemy ORM models for the reconciliation engine.

Single source of truth for transactions is the `transactions` table, keyed
per user by transaction_hash. A session's own view of its statement is the
`statement_lines` table: one row per valid parsed line, each pointing at the
canonical transaction it was deduplicated onto. Nothing is dual-written.

Suggestions are stored in `recurring_suggestions` (ordered by position within
a session) with member snapshots in `suggestion_members`.
"""

import uuid
from datetime import datetime, timedelta

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship, validates

from config.config_loader import get_session_config
from core.models import (
    Category,
    DetectionRuleSet,
    EntryType,
    Frequency,
    SessionStatistics,
    SessionStatus,
    SuggestedEntry,
    SuggestionStatus,
    TransactionStatus,
    parse_enum,
    validate_confidence,
)
from storage.db import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _default_expiry() -> datetime:
    return datetime.now() + timedelta(days=get_session_config().get("retention_days", 7))


def _enum_column(enum_cls, name: str):
    # Store the enum's value ("pending"), not its member name ("PENDING").
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


Money = Numeric(14, 2, asdecimal=True)


class ImportSessionRow(Base):
    """One statement upload, from upload through suggestion generation."""

    __tablename__ = "import_sessions"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)

    # Uploaded file
    filename = Column(String(255), nullable=False)
    file_size = Column(Integer, nullable=True)
    file_hash = Column(String(64), nullable=True, index=True)

    # Processing status
    status = Column(_enum_column(SessionStatus, "session_status"), nullable=False, default=SessionStatus.UPLOADING)
    processing_stage = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)

    # Detected statement metadata
    bank_name = Column(String(120), nullable=True)
    account_number = Column(String(34), nullable=True)
    statement_start = Column(Date, nullable=True)
    statement_end = Column(Date, nullable=True)

    # Statistics
    total_transactions = Column(Integer, nullable=False, default=0)
    duplicate_transactions = Column(Integer, nullable=False, default=0)
    recurring_detected = Column(Integer, nullable=False, default=0)
    date_range_days = Column(Integer, nullable=False, default=0)
    total_debits = Column(Money, nullable=False, default=0)
    total_credits = Column(Money, nullable=False, default=0)
    records_created = Column(Integer, nullable=False, default=0)

    # Retention
    expires_at = Column(DateTime, nullable=False, default=_default_expiry)
    auto_cleanup = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    lines = relationship(
        "StatementLineRow",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="StatementLineRow.line_number",
    )
    recurring_payments = relationship(
        "SuggestionRow",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="SuggestionRow.position",
    )

    __table_args__ = (
        Index("ix_import_sessions_user_status", "user_id", "status"),
        Index("ix_import_sessions_user_created", "user_id", "created_at"),
    )

    @validates("status")
    def _validate_status(self, _key, value):
        return parse_enum(SessionStatus, value, "status")

    @property
    def statistics(self) -> SessionStatistics:
        return SessionStatistics(
            total_transactions=self.total_transactions or 0,
            duplicate_transactions=self.duplicate_transactions or 0,
            recurring_detected=self.recurring_detected or 0,
            date_range_days=self.date_range_days or 0,
            total_debits=float(self.total_debits or 0),
            total_credits=float(self.total_credits or 0),
            records_created=self.records_created or 0,
        )

    @property
    def statement_period(self) -> dict:
        return {"start": self.statement_start, "end": self.statement_end}

    def __repr__(self) -> str:
        return f"ImportSessionRow(id={self.id!r}, user={self.user_id!r}, status={self.status.value!r})"


class TransactionRow(Base):
    """Canonical transaction, unique per (user, transaction_hash)."""

    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False)

    # Session that first imported this transaction. Plain column so decided
    # transactions outlive the session's retention purge.
    import_session_id = Column(String(36), nullable=False, index=True)

    # Transaction details
    date = Column(Date, nullable=False)
    description = Column(String(512), nullable=False)
    reference = Column(String(120), nullable=True)
    amount = Column(Money, nullable=False)  # Negative for debits, positive for credits
    balance = Column(Money, nullable=True)
    original_text = Column(Text, nullable=True)

    # SHA-256 of user + amount + normalised description (no date)
    transaction_hash = Column(String(64), nullable=False)

    # Status & linkage
    status = Column(_enum_column(TransactionStatus, "transaction_status"), nullable=False, default=TransactionStatus.PENDING)
    record_created = Column(Boolean, nullable=False, default=False)
    created_record_id = Column(String(64), nullable=True)
    created_record_domain = Column(String(64), nullable=True)
    record_created_at = Column(DateTime, nullable=True)

    # Ignore
    ignored_reason = Column(Text, nullable=True)
    ignored_at = Column(DateTime, nullable=True)

    # Pattern matching
    pattern_matched = Column(Boolean, nullable=False, default=False)
    pattern_confidence = Column(Float, nullable=False, default=0.0)
    pattern_id = Column(String(160), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    __table_args__ = (
        UniqueConstraint("user_id", "transaction_hash", name="uq_transactions_user_hash"),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_status", "user_id", "status"),
        Index("ix_transactions_pattern", "pattern_id"),
    )

    @validates("status")
    def _validate_status(self, _key, value):
        return parse_enum(TransactionStatus, value, "status")

    @validates("pattern_confidence")
    def _validate_confidence(self, _key, value):
        return validate_confidence(value, "pattern_confidence")

    def __repr__(self) -> str:
        return f"TransactionRow(id={self.id!r}, {self.date} {self.description!r} {self.amount})"


class StatementLineRow(Base):
    """One valid line of a session's statement, linked to its canonical transaction."""

    __tablename__ = "statement_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    import_session_id = Column(String(36), ForeignKey("import_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=False, index=True)
    line_number = Column(Integer, nullable=False)

    date = Column(Date, nullable=False)
    description = Column(String(512), nullable=False)
    amount = Column(Money, nullable=False)
    balance = Column(Money, nullable=True)
    original_text = Column(Text, nullable=True)

    # True when the line matched a transaction that already existed
    is_duplicate = Column(Boolean, nullable=False, default=False)

    session = relationship("ImportSessionRow", back_populates="lines")
    transaction = relationship("TransactionRow")

    __table_args__ = (
        UniqueConstraint("import_session_id", "line_number", name="uq_statement_lines_session_line"),
    )


class SuggestionRow(Base):
    """A recurring-payment suggestion attached to an import session."""

    __tablename__ = "recurring_suggestions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    import_session_id = Column(String(36), ForeignKey("import_sessions.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False)
    group_key = Column(String(255), nullable=False)

    payee = Column(String(255), nullable=False)
    category = Column(_enum_column(Category, "suggestion_category"), nullable=False, default=Category.OTHER)
    subcategory = Column(String(64), nullable=True)
    amount = Column(Money, nullable=False)
    frequency = Column(_enum_column(Frequency, "suggestion_frequency"), nullable=False, default=Frequency.MONTHLY)
    confidence = Column(Float, nullable=False)

    # suggested_entry
    suggested_title = Column(String(255), nullable=True)
    suggested_provider = Column(String(255), nullable=True)
    suggested_type = Column(_enum_column(EntryType, "suggested_entry_type"), nullable=False, default=EntryType.BILL)

    status = Column(_enum_column(SuggestionStatus, "suggestion_status"), nullable=False, default=SuggestionStatus.PENDING)
    user_modifications = Column(JSON, nullable=True)
    created_record_id = Column(String(64), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    session = relationship("ImportSessionRow", back_populates="recurring_payments")
    transactions = relationship(
        "SuggestionMemberRow",
        back_populates="suggestion",
        cascade="all, delete-orphan",
        order_by="SuggestionMemberRow.date",
    )

    __table_args__ = (
        UniqueConstraint("import_session_id", "position", name="uq_suggestions_session_position"),
        UniqueConstraint("import_session_id", "group_key", name="uq_suggestions_session_group"),
    )

    @validates("category")
    def _validate_category(self, _key, value):
        return parse_enum(Category, value, "category")

    @validates("frequency")
    def _validate_frequency(self, _key, value):
        return parse_enum(Frequency, value, "frequency")

    @validates("status")
    def _validate_status(self, _key, value):
        return parse_enum(SuggestionStatus, value, "status")

    @validates("confidence")
    def _validate_confidence(self, _key, value):
        return validate_confidence(value, "confidence")

    @property
    def suggested_entry(self) -> SuggestedEntry:
        return SuggestedEntry(
            title=self.suggested_title or "",
            provider=self.suggested_provider or "",
            type=self.suggested_type,
        )

    @property
    def transaction_ids(self) -> list[str]:
        """Distinct canonical transactions behind this suggestion, in date order."""
        seen: list[str] = []
        for member in self.transactions:
            if member.transaction_id not in seen:
                seen.append(member.transaction_id)
        return seen


class SuggestionMemberRow(Base):
    """Snapshot of one statement line supporting a suggestion."""

    __tablename__ = "suggestion_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    suggestion_id = Column(Integer, ForeignKey("recurring_suggestions.id", ondelete="CASCADE"), nullable=False, index=True)
    statement_line_id = Column(Integer, nullable=True)
    transaction_id = Column(String(36), nullable=False, index=True)

    date = Column(Date, nullable=False)
    description = Column(String(512), nullable=False)
    amount = Column(Money, nullable=False)
    original_text = Column(Text, nullable=True)

    suggestion = relationship("SuggestionRow", back_populates="transactions")


class DetectionRulesRow(Base):
    """
    A stored RecurringDetectionRules document. At most one row may have
    is_default = true (partial unique index); custom_user rows are per-user
    overrides.
    """

    __tablename__ = "detection_rules"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    version = Column(String(32), nullable=False, default="1.0")

    # Category-grouped PatternRule lists, keyed by group name
    rules = Column(JSON, nullable=False, default=dict)
    settings = Column(JSON, nullable=False, default=dict)

    is_default = Column(Boolean, nullable=False, default=False)
    custom_user = Column(String(64), nullable=True, unique=True)

    created_by = Column(String(64), nullable=False, default="system")
    last_updated_by = Column(String(64), nullable=False, default="system")
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    __table_args__ = (
        Index(
            "uq_detection_rules_single_default",
            "is_default",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )

    def to_rule_set(self) -> DetectionRuleSet:
        document = dict(self.rules or {})
        document.update(
            name=self.name,
            description=self.description,
            version=self.version,
            settings=self.settings or {},
        )
        return DetectionRuleSet.from_document(
            document,
            id=self.id,
            is_default=bool(self.is_default),
            custom_user=self.custom_user,
        )
