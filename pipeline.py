"""
pipeline.py
------------
Main orchestration layer. Wires together, for one uploaded statement:
    1. StatementParser          →  parsed lines (external boundary)
    2. TransactionIngestor      →  deduplicated canonical transactions
    3. RuleResolver + Matcher   →  pattern match data on each transaction
    4. RecurrenceGrouper        →  TransactionGroups
    5. SuggestionBuilder        →  pending suggestions on the session

and drives the import session through its lifecycle while doing so. Any
failure after the session is opened marks it failed with the error message
before the exception propagates.

Usage:
    from pipeline import ReconciliationPipeline

    pipeline = ReconciliationPipeline(session_factory)
    result = pipeline.run(user_id, "statement.csv")
"""

import hashlib
import logging
import os
from dataclasses import dataclass, field
from typing import Any, List

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config.config_loader import get_recurrence_config
from core.errors import StatementParseError
from core.models import IngestResult, ProcessingStage, TransactionGroup, TransactionStatus
from core.pattern_matcher import PatternMatcher
from core.recurrence_grouper import RecurrenceGrouper
from core.rule_resolver import RuleResolver
from core.session_lifecycle import SessionLifecycleManager
from core.statement_parser import CsvStatementParser, StatementParser
from core.suggestion_builder import SuggestionBuilder
from core.transaction_ingestor import TransactionIngestor
from storage.queries import session_occurrences
from storage.tables import ImportSessionRow, StatementLineRow, SuggestionRow, TransactionRow

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    session: ImportSessionRow
    ingest: IngestResult
    groups: List[TransactionGroup] = field(default_factory=list)
    suggestions: List[SuggestionRow] = field(default_factory=list)


class ReconciliationPipeline:
    """
    End-to-end statement reconciliation pipeline.

    Components are built from the one session factory so callers never deal
    with them individually.
    """

    def __init__(self, session_factory: sessionmaker, parser: StatementParser | None = None, include_history: bool | None = None):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker bound to the engine's database.
            parser: Statement parser. Defaults to CsvStatementParser.
            include_history: Override recurrence.include_history from config.
        """
        self.session_factory = session_factory
        self.parser = parser or CsvStatementParser()
        self.include_history = (
            bool(get_recurrence_config().get("include_history", True)) if include_history is None else include_history
        )

        self.sessions = SessionLifecycleManager(session_factory)
        self.ingestor = TransactionIngestor(session_factory)
        self.resolver = RuleResolver(session_factory)
        self.matcher = PatternMatcher()
        self.grouper = RecurrenceGrouper()
        self.builder = SuggestionBuilder(session_factory)

        logger.info(
            f"Pipeline initialized. Parser: {type(self.parser).__name__}. "
            f"History widening: {'on' if self.include_history else 'off'}."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(self, user_id: str, source: Any, filename: str | None = None, auto_cleanup: bool = True) -> PipelineResult:
        """
        Import one statement for a user.

        Args:
            user_id: Owner of the statement.
            source: Whatever the parser reads (a path for the CSV parser).
            filename: Display name. Defaults to the basename of a path source.

        Returns:
            PipelineResult with the completed session and its suggestions.

        Raises:
            DuplicateImportError: The same file was already imported.
            StatementParseError: The parser could not read the source.
        """
        filename = filename or (os.path.basename(os.fspath(source)) if isinstance(source, (str, os.PathLike)) else "statement")
        file_hash, file_size = self._fingerprint_source(source)

        session = self.sessions.create_session(
            user_id, filename, file_size=file_size, file_hash=file_hash, auto_cleanup=auto_cleanup,
        )
        self.sessions.start_processing(session.id)
        logger.info(f"Pipeline starting. Session {session.id}, user {user_id}, file {filename!r}.")

        # --- Stage 1: Parse ---
        try:
            statement = self.parser.parse(source)
        except Exception as exc:
            logger.exception(f"Session {session.id}: statement parsing failed.")
            self.sessions.fail(session.id, str(exc))
            if isinstance(exc, StatementParseError):
                raise
            raise StatementParseError(str(exc)) from exc

        try:
            self.sessions.record_statement(session.id, statement)

            # --- Stage 2: Ingest ---
            self.sessions.set_stage(session.id, ProcessingStage.TRANSACTION_EXTRACTION)
            ingest = self.ingestor.ingest(user_id, session.id, statement.lines)
            logger.info(
                f"Stage 2 complete. New: {len(ingest.new_transaction_ids):,}, "
                f"duplicates: {len(ingest.duplicate_transaction_ids):,}, rejected lines: {len(ingest.errors):,}."
            )

            # --- Stages 3-5: Match, group, suggest ---
            groups, suggestions = self.analyze(user_id, session.id)

            session = self.sessions.complete(session.id)
        except Exception as exc:
            logger.exception(f"Session {session.id}: processing failed.")
            self.sessions.fail(session.id, str(exc))
            raise

        logger.info(
            f"Pipeline complete. Session {session.id}: {len(suggestions):,} suggestions, "
            f"statistics {session.statistics.to_dict()}."
        )
        return PipelineResult(session=session, ingest=ingest, groups=groups, suggestions=suggestions)

    def analyze(self, user_id: str, session_id: str) -> tuple[List[TransactionGroup], List[SuggestionRow]]:
        """
        Match, group and suggest for a session that is processing. Safe to
        re-run: suggestions are refreshed, never duplicated.
        """
        rule_set = self.resolver.resolve(user_id)

        # --- Stage 3: Pattern matching ---
        self.sessions.set_stage(session_id, ProcessingStage.PATTERN_ANALYSIS)
        self._classify_session(user_id, session_id, rule_set)

        # --- Stage 4: Recurrence grouping ---
        lookback = rule_set.settings.frequency_detection_window_days if self.include_history else None
        with self.session_factory() as db:
            occurrences = session_occurrences(db, user_id, session_id, lookback_days=lookback)
        groups = self.grouper.detect(occurrences, rule_set)
        logger.info(f"Stage 4 complete. Occurrences: {len(occurrences):,}, groups: {len(groups):,}.")

        # --- Stage 5: Suggestions ---
        self.sessions.set_stage(session_id, ProcessingStage.SUGGESTION_GENERATION)
        suggestions = self.builder.build(session_id, groups, rule_set)
        logger.info(f"Stage 5 complete. Suggestions on session: {len(suggestions):,}.")

        return groups, suggestions

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _classify_session(self, user_id: str, session_id: str, rule_set) -> int:
        """Classifies the session's pending transactions. Decided ones keep their match data."""
        with self.session_factory() as db:
            in_session = select(StatementLineRow.transaction_id).where(StatementLineRow.import_session_id == session_id)
            transactions = db.execute(
                select(TransactionRow).where(
                    TransactionRow.id.in_(in_session),
                    TransactionRow.user_id == user_id,
                    TransactionRow.status == TransactionStatus.PENDING,
                )
            ).scalars().all()
            matched = self.matcher.classify_all(transactions, rule_set)
            db.commit()
        logger.info(f"Stage 3 complete. Classified: {len(transactions):,}, matched: {matched:,}.")
        return matched

    @staticmethod
    def _fingerprint_source(source: Any) -> tuple[str | None, int | None]:
        """sha256 and size of a file source; (None, None) for anything else."""
        if not isinstance(source, (str, os.PathLike)) or not os.path.isfile(source):
            return (None, None)
        digest = hashlib.sha256()
        with open(source, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
        return (digest.hexdigest(), os.path.getsize(source))


# =============================================================================
# OUTPUT SERIALIZATION
# =============================================================================

SUGGESTION_COLUMNS = [
    "suggestion_index", "payee", "category", "subcategory", "amount", "frequency",
    "confidence", "occurrences", "first_date", "last_date", "suggested_title",
    "suggested_type", "status",
]


def suggestions_to_frame(suggestions: List[SuggestionRow]) -> pd.DataFrame:
    """Flat DataFrame of suggestions, highest confidence first."""
    if not suggestions:
        return pd.DataFrame(columns=SUGGESTION_COLUMNS)

    rows = []
    for s in suggestions:
        members = s.transactions
        rows.append({
            "suggestion_index": s.position,
            "payee": s.payee,
            "category": s.category.value,
            "subcategory": s.subcategory,
            "amount": float(s.amount),
            "frequency": s.frequency.value,
            "confidence": s.confidence,
            "occurrences": len(members),
            "first_date": members[0].date.strftime("%Y-%m-%d") if members else "",
            "last_date": members[-1].date.strftime("%Y-%m-%d") if members else "",
            "suggested_title": s.suggested_title,
            "suggested_type": s.suggested_type.value,
            "status": s.status.value,
        })

    df = pd.DataFrame(rows, columns=SUGGESTION_COLUMNS)
    return df.sort_values(["confidence", "suggestion_index"], ascending=[False, True]).reset_index(drop=True)
