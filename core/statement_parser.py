"""
statement_parser.py
--------------------
Upstream boundary. Turning a PDF or scanned statement into lines is someone
else's job; the engine only needs something that implements StatementParser.

CsvStatementParser reads statements that have already been extracted to CSV
(one row per line with date, description, amount and optionally balance,
reference, original_text). It is what the CLI uses.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

import pandas as pd

from core.errors import StatementParseError
from core.models import ParsedStatement

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["date", "description", "amount"]
OPTIONAL_COLUMNS = ["balance", "reference", "original_text"]


class StatementParser(ABC):
    """Parses one uploaded statement."""

    @abstractmethod
    def parse(self, source: Any) -> ParsedStatement:
        """
        Raises:
            StatementParseError: If the source cannot be read at all.
        """


class CsvStatementParser(StatementParser):
    """
    Usage:
        parser = CsvStatementParser(bank_name="Barclays")
        statement = parser.parse("statement.csv")
    """

    def __init__(self, bank_name: str | None = None, account_number: str | None = None, dayfirst: bool = True):
        self.bank_name = bank_name
        self.account_number = account_number
        self.dayfirst = dayfirst

    def parse(self, source: Any) -> ParsedStatement:
        try:
            df = pd.read_csv(source, dtype=str, keep_default_na=False)
        except (OSError, ValueError, pd.errors.ParserError) as exc:
            raise StatementParseError(f"Could not read statement: {exc}") from exc

        df.columns = [str(c).strip().lower() for c in df.columns]
        missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise StatementParseError(f"Missing required columns: {missing}")

        for col in OPTIONAL_COLUMNS:
            if col not in df.columns:
                df[col] = ""

        # Normalise dates to ISO; unparseable ones become "" and are rejected
        # per line during ingestion.
        raw_dates = df["date"].str.strip()
        parsed_dates = pd.to_datetime(raw_dates, format="%Y-%m-%d", errors="coerce")
        fallback = pd.to_datetime(raw_dates, dayfirst=self.dayfirst, format="mixed", errors="coerce")
        parsed_dates = parsed_dates.fillna(fallback)
        df["date"] = parsed_dates.dt.strftime("%Y-%m-%d").fillna("")

        lines = [
            {
                "date": row["date"],
                "description": row["description"],
                "amount": row["amount"],
                "balance": row["balance"] or None,
                "reference": row["reference"] or None,
                "original_text": row["original_text"] or None,
            }
            for row in df[REQUIRED_COLUMNS + OPTIONAL_COLUMNS].to_dict(orient="records")
        ]

        valid_dates = parsed_dates.dropna()
        statement = ParsedStatement(
            lines=lines,
            bank_name=self.bank_name,
            account_number=self.account_number,
            statement_start=valid_dates.min().date() if not valid_dates.empty else None,
            statement_end=valid_dates.max().date() if not valid_dates.empty else None,
        )
        logger.info(f"Parsed statement: {len(lines)} lines, period {statement.statement_start} to {statement.statement_end}.")
        return statement
