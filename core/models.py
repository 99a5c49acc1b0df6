"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- Closed value sets (statuses, frequency, category, entry type) are str-valued
  enums. parse_enum() turns raw strings into members and raises
  ValidationError for anything outside the set.

- ParsedLine / ParsedStatement: what the external statement parser hands us.

- PatternRule / DetectionSettings / DetectionRuleSet: the resolved rule
  configuration a user's transactions are classified against.

- Occurrence / TransactionGroup: input and output of the recurrence grouper.
  TransactionGroup is the reusable primitive the suggestion builder consumes.

- RecordRequest / ImportMetadata: the payload sent to the downstream
  financial-record store when a suggestion is accepted.
"""

import enum
import re
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, Optional

from core.errors import ValidationError


# =============================================================================
# CLOSED VALUE SETS
# =============================================================================

class SessionStatus(str, enum.Enum):
    """Import session lifecycle state."""

    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class ProcessingStage(str, enum.Enum):
    """Advisory progress markers written while a session is processed."""

    PDF_PARSING = "pdf_parsing"
    TRANSACTION_EXTRACTION = "transaction_extraction"
    PATTERN_ANALYSIS = "pattern_analysis"
    SUGGESTION_GENERATION = "suggestion_generation"
    COMPLETE = "complete"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    RECORD_CREATED = "record_created"
    IGNORED = "ignored"


class SuggestionStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class Frequency(str, enum.Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"
    IRREGULAR = "irregular"


class Category(str, enum.Enum):
    UTILITIES = "utilities"
    BILLS = "bills"
    COUNCIL_TAX = "council_tax"
    INSURANCE = "insurance"
    SUBSCRIPTION = "subscription"
    RENT = "rent"
    MORTGAGE = "mortgage"
    TELECOMS = "telecoms"
    OTHER = "other"


class EntryType(str, enum.Enum):
    """Type of the downstream record a suggestion proposes."""

    UTILITY = "utility"
    BILL = "bill"
    ACCOUNT = "account"
    POLICY = "policy"
    OTHER = "other"


CATEGORY_ENTRY_TYPES = {
    Category.UTILITIES: EntryType.UTILITY,
    Category.BILLS: EntryType.BILL,
    Category.COUNCIL_TAX: EntryType.UTILITY,
    Category.TELECOMS: EntryType.UTILITY,
    Category.SUBSCRIPTION: EntryType.UTILITY,
    Category.INSURANCE: EntryType.POLICY,
    Category.RENT: EntryType.BILL,
    Category.MORTGAGE: EntryType.ACCOUNT,
    Category.OTHER: EntryType.OTHER,
}


def parse_enum(enum_cls: type[enum.Enum], value: Any, field_name: str) -> Any:
    """
    Coerces a raw value into a member of enum_cls.

    Raises:
        ValidationError: If the value is not one of the enum's values.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [m.value for m in enum_cls]
        raise ValidationError(f"Invalid {field_name} {value!r}. Allowed: {allowed}") from None


def validate_confidence(value: float, field_name: str = "confidence") -> float:
    """Rejects confidences outside [0, 1]."""
    if value is None or not 0.0 <= float(value) <= 1.0:
        raise ValidationError(f"{field_name} must be within [0, 1], got {value!r}")
    return float(value)


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def to_decimal(value: Any, field_name: str) -> Decimal:
    """Parses an amount-like value into a Decimal (floats go through str())."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} is required")
    else:
        try:
            result = Decimal(str(value).strip().replace(",", "").replace("£", ""))
        except InvalidOperation:
            raise ValidationError(f"{field_name} is not a number: {value!r}") from None
    if not result.is_finite():
        raise ValidationError(f"{field_name} is not a finite number: {value!r}")
    return result


def to_date(value: Any, field_name: str = "date") -> date:
    """Accepts date, datetime or ISO 'YYYY-MM-DD' strings."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.strptime(value.strip()[:10], "%Y-%m-%d").date()
        except ValueError:
            pass
    raise ValidationError(f"{field_name} is missing or not a valid date: {value!r}")


# =============================================================================
# UPSTREAM: PARSED STATEMENT
# =============================================================================

@dataclass
class ParsedLine:
    """One transaction line as extracted by the external statement parser."""

    date: date
    description: str
    amount: Decimal                      # Signed. Negative = debit.
    balance: Optional[Decimal] = None
    reference: Optional[str] = None
    original_text: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Dict[str, Any]) -> "ParsedLine":
        """
        Builds a validated line from a parser dict. Accepts both snake_case
        and the parser's camelCase originalText key.

        Raises:
            ValidationError: On a missing or malformed required field.
        """
        description = raw.get("description")
        if description is None or not str(description).strip():
            raise ValidationError("description is required")

        balance = raw.get("balance")
        return cls(
            date=to_date(raw.get("date")),
            description=str(description).strip(),
            amount=to_decimal(raw.get("amount"), "amount"),
            balance=None if balance is None or balance == "" else to_decimal(balance, "balance"),
            reference=raw.get("reference") or None,
            original_text=raw.get("original_text") or raw.get("originalText") or None,
        )


@dataclass
class ParsedStatement:
    """Parser output for one uploaded file."""

    lines: list[Dict[str, Any] | ParsedLine] = field(default_factory=list)
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    statement_start: Optional[date] = None
    statement_end: Optional[date] = None


# =============================================================================
# RULE CONFIGURATION
# =============================================================================

RULE_GROUPS = (
    "utility_rules",
    "council_tax_rules",
    "telecoms_rules",
    "subscription_rules",
    "insurance_rules",
    "general_rules",
)


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


@dataclass
class PatternRule:
    """A named set of matchable keywords mapped to a category/provider."""

    name: str
    patterns: list[str]
    category: Category
    group: str = "general_rules"
    subcategory: Optional[str] = None
    provider: Optional[str] = None
    confidence_boost: float = 0.1
    min_occurrences: int = 2
    expected_frequency: Frequency = Frequency.MONTHLY
    region_specific: bool = True
    active: bool = True

    def __post_init__(self):
        if not self.name:
            raise ValidationError("Pattern rule name is required")
        if not self.patterns or not all(str(p).strip() for p in self.patterns):
            raise ValidationError(f"Pattern rule '{self.name}' needs at least one non-empty pattern")
        if self.group not in RULE_GROUPS:
            raise ValidationError(f"Unknown rule group {self.group!r}")
        self.category = parse_enum(Category, self.category, "category")
        self.expected_frequency = parse_enum(Frequency, self.expected_frequency, "expected_frequency")
        if self.min_occurrences < 1:
            raise ValidationError("min_occurrences must be at least 1")

    @property
    def rule_id(self) -> str:
        """Stable identity within a rule set, stored as Transaction.pattern_id."""
        return f"{self.group}/{_slugify(self.name)}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], group: str) -> "PatternRule":
        # Older seeds call region_specific "uk_specific".
        region_specific = data.get("region_specific", data.get("uk_specific", True))
        return cls(
            name=data.get("name", ""),
            patterns=list(data.get("patterns") or []),
            category=data.get("category", Category.OTHER.value),
            group=group,
            subcategory=data.get("subcategory"),
            provider=data.get("provider"),
            confidence_boost=float(data.get("confidence_boost", 0.1)),
            min_occurrences=int(data.get("min_occurrences", 2)),
            expected_frequency=data.get("expected_frequency", Frequency.MONTHLY.value),
            region_specific=bool(region_specific),
            active=bool(data.get("active", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "patterns": list(self.patterns),
            "category": self.category.value,
            "subcategory": self.subcategory,
            "provider": self.provider,
            "confidence_boost": self.confidence_boost,
            "min_occurrences": self.min_occurrences,
            "expected_frequency": self.expected_frequency.value,
            "region_specific": self.region_specific,
            "active": self.active,
        }


@dataclass
class DetectionSettings:
    """Global thresholds of a rule set."""

    min_confidence_threshold: float = 0.6
    fuzzy_match_threshold: float = 0.8
    amount_variance_tolerance: float = 0.1
    frequency_detection_window_days: int = 90
    require_uk_sort_code: bool = False

    def __post_init__(self):
        validate_confidence(self.min_confidence_threshold, "min_confidence_threshold")
        validate_confidence(self.fuzzy_match_threshold, "fuzzy_match_threshold")
        if self.amount_variance_tolerance < 0:
            raise ValidationError("amount_variance_tolerance must be non-negative")
        if self.frequency_detection_window_days < 1:
            raise ValidationError("frequency_detection_window_days must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "DetectionSettings":
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DetectionRuleSet:
    """
    A resolved RecurringDetectionRules document.

    rules maps each category group (utility_rules, ...) to its PatternRules.
    """

    name: str
    rules: Dict[str, list[PatternRule]]
    settings: DetectionSettings = field(default_factory=DetectionSettings)
    id: Optional[str] = None
    description: Optional[str] = None
    version: str = "1.0"
    is_default: bool = False
    custom_user: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any], **identity) -> "DetectionRuleSet":
        """Builds a rule set from a YAML/JSON document (seed or stored row)."""
        rules = {
            group: [PatternRule.from_dict(r, group) for r in (doc.get(group) or [])]
            for group in RULE_GROUPS
        }
        return cls(
            name=doc.get("name") or "Unnamed rule set",
            description=doc.get("description"),
            version=str(doc.get("version", "1.0")),
            rules=rules,
            settings=DetectionSettings.from_dict(doc.get("settings")),
            **identity,
        )

    def rules_document(self) -> Dict[str, list[Dict[str, Any]]]:
        return {group: [r.to_dict() for r in self.rules.get(group, [])] for group in RULE_GROUPS}

    def active_rules(self) -> Iterator[PatternRule]:
        for group in RULE_GROUPS:
            for rule in self.rules.get(group, []):
                if rule.active:
                    yield rule

    def get_rule(self, rule_id: Optional[str]) -> Optional[PatternRule]:
        if not rule_id:
            return None
        for rule in self.active_rules():
            if rule.rule_id == rule_id:
                return rule
        return None


@dataclass
class MatchResult:
    """Winning rule for one description."""

    rule_id: str
    rule_name: str
    matched_pattern: str
    base_score: float                # 1.0 for an exact hit, fuzzy ratio otherwise
    confidence: float                # base + boost, clamped to [0, 1]
    exact: bool


# =============================================================================
# RECURRENCE GROUPING
# =============================================================================

@dataclass
class Occurrence:
    """
    One dated appearance of a transaction in a statement. Several occurrences
    can point at the same canonical transaction.
    """

    line_id: int
    transaction_id: str
    date: date
    description: str
    amount: float
    original_text: Optional[str] = None
    pattern_matched: bool = False
    pattern_confidence: float = 0.0
    pattern_id: Optional[str] = None
    transaction_status: TransactionStatus = TransactionStatus.PENDING


@dataclass
class TransactionGroup:
    """
    Recurrence grouper output for a cluster of occurrences that passed the
    amount filter and the minimum-occurrence gate.
    """

    # Identity
    group_key: str                   # "rule:<pattern_id>" or "payee:<normalised payee>", plus direction
    category: Category
    rule_id: Optional[str]

    # Cadence
    frequency: Frequency
    cadence_consistency: float       # 0.0 – 1.0. How close gaps sit to the expected gap.

    # Amount statistics
    median_amount: float
    mean_amount: float
    amount_consistency: float        # 1 - 2 * coefficient of variation, floored at 0.

    # Score
    confidence: float

    # Tenure
    occurrence_count: int
    first_seen: date
    last_seen: date

    # Evidence
    members: list[Occurrence] = field(default_factory=list)
    dropped_members: int = 0         # Removed by the amount variance filter


# =============================================================================
# INGESTION RESULTS
# =============================================================================

@dataclass
class SessionStatistics:
    total_transactions: int = 0
    duplicate_transactions: int = 0
    recurring_detected: int = 0
    date_range_days: int = 0
    total_debits: float = 0.0
    total_credits: float = 0.0
    records_created: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LineError:
    line_number: int
    message: str


@dataclass
class IngestResult:
    session_id: str
    new_transaction_ids: list[str] = field(default_factory=list)
    duplicate_transaction_ids: list[str] = field(default_factory=list)
    errors: list[LineError] = field(default_factory=list)
    statistics: SessionStatistics = field(default_factory=SessionStatistics)

    @property
    def lines_accepted(self) -> int:
        return len(self.new_transaction_ids) + len(self.duplicate_transaction_ids)


# =============================================================================
# DOWNSTREAM: RECORD CREATION
# =============================================================================

@dataclass
class SuggestedEntry:
    title: str
    provider: str
    type: EntryType = EntryType.BILL

    def __post_init__(self):
        self.type = parse_enum(EntryType, self.type, "suggested_entry.type")


@dataclass
class AmountPattern:
    typical_amount: float
    variance: float
    currency: str


@dataclass
class ImportMetadata:
    import_session_id: str
    original_payee: str
    confidence_score: float
    detected_frequency: str
    amount_pattern: AmountPattern
    import_date: datetime = field(default_factory=datetime.now)
    source: str = "bank_import"
    created_from_suggestion: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["import_date"] = self.import_date.isoformat()
        return data


@dataclass
class RecordRequest:
    """One downstream financial-record creation request per accepted suggestion."""

    user_id: str
    title: str
    provider: str
    record_type: str
    domain: str
    amount: float
    notes: str
    import_metadata: ImportMetadata
