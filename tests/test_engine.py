"""
test_engine.py
---------------
Tests for the detection side of the reconciliation engine.

Run from the project root:
    python -m pytest tests/test_engine.py -v

Tests are organized by layer:
    - Config & Rule Set
    - Normalization & Fingerprint
    - Models
    - Pattern Matcher
    - Recurrence Grouper
    - Suggestion Builder
"""

import sys
import os
import pytest
import numpy as np
from datetime import date, timedelta
from types import SimpleNamespace

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import load_config, load_default_rules_document, get_recurrence_config
from core.errors import ValidationError
from core.models import (
    Category,
    DetectionRuleSet,
    DetectionSettings,
    EntryType,
    Frequency,
    Occurrence,
    ParsedLine,
    PatternRule,
    SuggestionStatus,
)
from core.normalization import canonical_amount, extract_payee_name, normalize_description, transaction_fingerprint
from core.pattern_matcher import PatternMatcher
from core.recurrence_grouper import RecurrenceGrouper
from core.session_lifecycle import SessionLifecycleManager
from core.suggestion_builder import SuggestionBuilder, entry_title
from storage.tables import SuggestionRow

BRITISH_GAS = "utility_rules/british-gas-energy"
DIRECT_DEBIT = "general_rules/direct-debit-pattern"


# =============================================================================
# HELPERS
# =============================================================================

def _default_rules() -> DetectionRuleSet:
    return DetectionRuleSet.from_document(load_default_rules_document(), is_default=True)


def _make_occurrences(
    dates,
    description: str = "BRITISH GAS",
    amounts=-85.50,
    pattern_id: str | None = BRITISH_GAS,
    pattern_confidence: float = 1.0,
    transaction_id: str = "tx-1",
    start_line_id: int = 1,
) -> list[Occurrence]:
    """Helper: one occurrence per date. amounts may be a scalar or a list."""
    if not isinstance(amounts, (list, tuple)):
        amounts = [amounts] * len(dates)
    return [
        Occurrence(
            line_id=start_line_id + i,
            transaction_id=transaction_id,
            date=d if isinstance(d, date) else date.fromisoformat(d),
            description=description,
            amount=float(amount),
            pattern_matched=pattern_id is not None,
            pattern_confidence=pattern_confidence if pattern_id is not None else 0.0,
            pattern_id=pattern_id,
        )
        for i, (d, amount) in enumerate(zip(dates, amounts))
    ]


def _spaced_dates(start: str, gaps: list[int]) -> list[date]:
    """Helper: start date followed by dates at the given day gaps."""
    current = date.fromisoformat(start)
    dates = [current]
    for gap in gaps:
        current = current + timedelta(days=gap)
        dates.append(current)
    return dates


# =============================================================================
# CONFIG & RULE SET TESTS
# =============================================================================

class TestConfig:
    def test_config_loads_successfully(self):
        config = load_config()
        for block in ("database", "import_sessions", "ingestion", "matching", "recurrence", "downstream", "logging"):
            assert block in config

    def test_frequency_bands_cover_all_regular_frequencies(self):
        bands = get_recurrence_config()["frequency_bands"]
        assert set(bands) == {"weekly", "monthly", "quarterly", "annually"}
        for band in bands.values():
            assert band["min_gap_days"] <= band["expected_gap_days"] <= band["max_gap_days"]

    def test_confidence_weights_sum_to_one(self):
        weights = get_recurrence_config()["confidence_weights"]
        assert sum(weights.values()) == pytest.approx(1.0)


class TestDefaultRuleSet:
    def test_seed_document_builds_rule_set(self):
        rule_set = _default_rules()
        assert rule_set.name == "UK Banking Detection Rules v1.0"
        assert rule_set.settings.min_confidence_threshold == 0.7
        assert rule_set.settings.fuzzy_match_threshold == 0.85

    def test_rule_ids_are_unique(self):
        ids = [rule.rule_id for rule in _default_rules().active_rules()]
        assert len(ids) == len(set(ids))

    def test_get_rule_by_id(self):
        rule = _default_rules().get_rule(BRITISH_GAS)
        assert rule.provider == "British Gas"
        assert rule.category == Category.UTILITIES

    def test_rules_document_round_trips_through_from_document(self):
        rule_set = _default_rules()
        doc = rule_set.rules_document()
        doc["name"] = rule_set.name
        rebuilt = DetectionRuleSet.from_document(doc)
        assert [r.rule_id for r in rebuilt.active_rules()] == [r.rule_id for r in rule_set.active_rules()]

    def test_inactive_rules_are_skipped(self):
        doc = load_default_rules_document()
        doc["utility_rules"][0]["active"] = False
        rule_set = DetectionRuleSet.from_document(doc)
        assert rule_set.get_rule(BRITISH_GAS) is None


# =============================================================================
# NORMALIZATION & FINGERPRINT TESTS
# =============================================================================

class TestFingerprint:
    def test_fingerprint_is_deterministic(self):
        a = transaction_fingerprint("user-1", "-85.50", "BRITISH GAS")
        b = transaction_fingerprint("user-1", "-85.50", "BRITISH GAS")
        assert a == b
        assert len(a) == 64

    def test_amount_representations_agree(self):
        assert canonical_amount("-85.5") == "-85.50"
        assert canonical_amount(-85.50) == "-85.50"
        assert transaction_fingerprint("u", "-85.5", "X") == transaction_fingerprint("u", -85.50, "X")

    def test_description_case_and_whitespace_ignored(self):
        assert transaction_fingerprint("u", -1, "british  gas ") == transaction_fingerprint("u", -1, "BRITISH GAS")

    def test_fingerprint_differs_by_user_amount_and_description(self):
        base = transaction_fingerprint("u1", -10, "NETFLIX")
        assert transaction_fingerprint("u2", -10, "NETFLIX") != base
        assert transaction_fingerprint("u1", -11, "NETFLIX") != base
        assert transaction_fingerprint("u1", -10, "SPOTIFY") != base

    def test_normalize_description(self):
        assert normalize_description("  dd   british\tgas ") == "DD BRITISH GAS"


class TestPayeeExtraction:
    def test_strips_payment_prefix_and_trailing_date(self):
        assert extract_payee_name("DD BRITISH GAS 15/08/25") == "British Gas"

    def test_strips_payment_suffix(self):
        assert extract_payee_name("SKY DIGITAL SO") == "Sky Digital"

    def test_strips_trailing_reference(self):
        assert extract_payee_name("ACME GYM REF X12345") == "Acme Gym"


# =============================================================================
# MODEL TESTS
# =============================================================================

class TestModels:
    def test_parsed_line_from_mapping(self):
        line = ParsedLine.from_mapping({
            "date": "2025-08-15", "description": " BRITISH GAS ", "amount": "-85.50", "originalText": "raw",
        })
        assert line.date == date(2025, 8, 15)
        assert line.description == "BRITISH GAS"
        assert str(line.amount) == "-85.50"
        assert line.original_text == "raw"

    @pytest.mark.parametrize("raw", [
        {"date": "2025-08-15", "description": "X"},
        {"date": "not a date", "description": "X", "amount": "1"},
        {"date": "2025-08-15", "description": "   ", "amount": "1"},
        {"date": "2025-08-15", "description": "X", "amount": "abc"},
    ])
    def test_parsed_line_rejects_bad_fields(self, raw):
        with pytest.raises(ValidationError):
            ParsedLine.from_mapping(raw)

    def test_pattern_rule_rejects_unknown_category(self):
        with pytest.raises(ValidationError):
            PatternRule(name="X", patterns=["X"], category="groceries")

    def test_pattern_rule_rejects_empty_patterns(self):
        with pytest.raises(ValidationError):
            PatternRule(name="X", patterns=[], category="other")

    def test_settings_reject_out_of_range_confidence(self):
        with pytest.raises(ValidationError):
            DetectionSettings(min_confidence_threshold=1.5)

    def test_suggestion_row_rejects_bad_values(self):
        with pytest.raises(ValidationError):
            SuggestionRow(confidence=1.2)
        with pytest.raises(ValidationError):
            SuggestionRow(frequency="fortnightly")
        with pytest.raises(ValidationError):
            SuggestionRow(status="maybe")


# =============================================================================
# PATTERN MATCHER TESTS
# =============================================================================

class TestPatternMatcher:
    def test_exact_match(self):
        result = PatternMatcher().match("BRITISH GAS", _default_rules())
        assert result is not None
        assert result.rule_id == BRITISH_GAS
        assert result.exact is True
        assert result.confidence == 1.0

    def test_match_is_case_insensitive(self):
        result = PatternMatcher().match("Dd British Gas 123456", _default_rules())
        assert result.rule_id == BRITISH_GAS

    def test_longer_pattern_beats_generic_suffix_rule(self):
        result = PatternMatcher().match("NETFLIX DD", _default_rules())
        assert result.rule_id == "subscription_rules/netflix-uk"

    def test_tie_goes_to_longer_pattern_even_if_fuzzy(self):
        rule_set = DetectionRuleSet(
            name="Tied",
            rules={"utility_rules": [
                PatternRule(name="Short", patterns=["GAS"], category="utilities",
                            group="utility_rules", confidence_boost=0.5),
                PatternRule(name="Long", patterns=["BRITISH GAZ"], category="utilities",
                            group="utility_rules", confidence_boost=0.5),
            ]},
            settings=DetectionSettings(fuzzy_match_threshold=0.85),
        )
        result = PatternMatcher().match("BRITISH GAS", rule_set)
        assert result.confidence == 1.0
        assert result.rule_name == "Long"
        assert result.exact is False

    def test_anchored_pattern_matches_only_at_end(self):
        matcher = PatternMatcher()
        rules = _default_rules()
        assert matcher.match("GYM MEMBERSHIP DD", rules).rule_id == DIRECT_DEBIT
        result = matcher.match("DDX GYM MEMBERSHIP", rules)
        assert result is None or result.rule_id != DIRECT_DEBIT

    def test_token_boundaries_respected(self):
        result = PatternMatcher().match("ASSESSMENT FEE", _default_rules())
        assert result is None

    def test_fuzzy_match_above_threshold(self):
        result = PatternMatcher().match("BRITISH GASS", _default_rules())
        assert result is not None
        assert result.rule_id == BRITISH_GAS
        assert result.exact is False
        assert 0.85 <= result.base_score < 1.0

    def test_unrelated_description_does_not_match(self):
        assert PatternMatcher().match("TESCO STORES 1234", _default_rules()) is None

    def test_confidence_clamped_for_large_boost(self):
        rule_set = DetectionRuleSet(
            name="Boosted",
            rules={"utility_rules": [PatternRule(name="Gas", patterns=["GAS CO"], category="utilities",
                                                 group="utility_rules", confidence_boost=5.0)]},
        )
        result = PatternMatcher().match("GAS CO", rule_set)
        assert result.confidence == 1.0

    def test_below_min_confidence_is_no_match(self):
        rule_set = DetectionRuleSet(
            name="Penalised",
            rules={"general_rules": [PatternRule(name="Weak", patterns=["WEAK"], category="other",
                                                 confidence_boost=-0.5)]},
            settings=DetectionSettings(min_confidence_threshold=0.7),
        )
        assert PatternMatcher().match("WEAK PAYMENT", rule_set) is None

    def test_classify_sets_fields(self):
        matcher = PatternMatcher()
        rules = _default_rules()

        matched = SimpleNamespace(description="BRITISH GAS", pattern_matched=False, pattern_confidence=0.0, pattern_id=None)
        matcher.classify(matched, rules)
        assert matched.pattern_matched is True
        assert matched.pattern_id == BRITISH_GAS
        assert 0.0 <= matched.pattern_confidence <= 1.0

        unmatched = SimpleNamespace(description="CORNER SHOP", pattern_matched=True, pattern_confidence=0.9, pattern_id="x")
        matcher.classify(unmatched, rules)
        assert unmatched.pattern_matched is False
        assert unmatched.pattern_confidence == 0.0
        assert unmatched.pattern_id is None


# =============================================================================
# RECURRENCE GROUPER TESTS
# =============================================================================

class TestFrequencyInference:
    @pytest.mark.parametrize("gaps, expected", [
        ([30, 31], Frequency.MONTHLY),
        ([6, 8], Frequency.WEEKLY),
        ([10, 75], Frequency.IRREGULAR),
        ([90, 91, 92], Frequency.QUARTERLY),
        ([365, 365], Frequency.ANNUALLY),
        ([36, 15], Frequency.IRREGULAR),
        ([], Frequency.IRREGULAR),
    ])
    def test_infer_frequency(self, gaps, expected):
        frequency, consistency = RecurrenceGrouper().infer_frequency(np.array(gaps, dtype=float))
        assert frequency == expected
        assert 0.0 <= consistency <= 1.0

    def test_irregular_has_zero_consistency(self):
        _, consistency = RecurrenceGrouper().infer_frequency(np.array([10, 75], dtype=float))
        assert consistency == 0.0

    def test_exact_gaps_are_fully_consistent(self):
        _, consistency = RecurrenceGrouper().infer_frequency(np.array([7, 7, 7], dtype=float))
        assert consistency == 1.0


class TestRecurrenceGrouper:
    def test_monthly_rule_group(self):
        occurrences = _make_occurrences(["2025-08-15", "2025-09-15", "2025-10-15"])
        groups = RecurrenceGrouper().detect(occurrences, _default_rules())

        assert len(groups) == 1
        group = groups[0]
        assert group.group_key == f"rule:{BRITISH_GAS}|debit"
        assert group.category == Category.UTILITIES
        assert group.frequency == Frequency.MONTHLY
        assert group.occurrence_count == 3
        assert group.median_amount == -85.50
        assert group.confidence >= 0.7
        assert group.first_seen == date(2025, 8, 15)
        assert group.last_seen == date(2025, 10, 15)

    def test_single_occurrence_never_groups(self):
        occurrences = _make_occurrences(["2025-08-15"])
        assert RecurrenceGrouper().detect(occurrences, _default_rules()) == []

    def test_rule_min_occurrences_gate(self):
        grouper = RecurrenceGrouper()
        rules = _default_rules()

        two = _make_occurrences(["2025-08-01", "2025-09-01"], description="GYM MEMBERSHIP DD", pattern_id=DIRECT_DEBIT)
        assert grouper.detect(two, rules) == []

        three = _make_occurrences(["2025-07-01", "2025-08-01", "2025-09-01"],
                                  description="GYM MEMBERSHIP DD", pattern_id=DIRECT_DEBIT)
        assert len(grouper.detect(three, rules)) == 1

    def test_amount_outlier_dropped(self):
        occurrences = _make_occurrences(
            ["2025-07-15", "2025-08-15", "2025-09-15", "2025-10-15"],
            amounts=[-85.50, -85.50, -200.00, -85.50],
        )
        groups = RecurrenceGrouper().detect(occurrences, _default_rules())
        assert len(groups) == 1
        assert groups[0].occurrence_count == 3
        assert groups[0].dropped_members == 1
        assert all(m.amount == -85.50 for m in groups[0].members)

    def test_unmatched_weekly_payee_groups(self):
        dates = _spaced_dates("2025-08-01", [7, 7, 7])
        occurrences = _make_occurrences(dates, description="WEEKLY SERVICE", amounts=-10.0, pattern_id=None)
        groups = RecurrenceGrouper().detect(occurrences, _default_rules())

        assert len(groups) == 1
        assert groups[0].group_key.startswith("payee:")
        assert groups[0].rule_id is None
        assert groups[0].category == Category.OTHER
        assert groups[0].frequency == Frequency.WEEKLY
        assert groups[0].confidence >= 0.7

    def test_similar_payee_spellings_cluster(self):
        first = _make_occurrences(["2025-08-01", "2025-09-01"], description="ACME FITNESS CLUB",
                                  amounts=-30.0, pattern_id=None, transaction_id="tx-a")
        second = _make_occurrences(["2025-10-01"], description="ACME FITNESS CLUB.",
                                   amounts=-30.0, pattern_id=None, transaction_id="tx-b", start_line_id=10)
        groups = RecurrenceGrouper().detect(first + second, _default_rules())
        assert len(groups) == 1
        assert groups[0].occurrence_count == 3

    def test_amounts_outside_tolerance_do_not_group(self):
        occurrences = _make_occurrences(["2025-08-01", "2025-09-01"], description="RANDOM SHOP",
                                        amounts=[-25.0, -35.0], pattern_id=None)
        assert RecurrenceGrouper().detect(occurrences, _default_rules()) == []

    def test_debits_and_credits_are_separate_groups(self):
        debits = _make_occurrences(["2025-08-01", "2025-09-01"], description="TRANSFER J SMITH",
                                   amounts=-100.0, pattern_id=None, transaction_id="tx-out")
        credits = _make_occurrences(["2025-08-02", "2025-09-02"], description="TRANSFER J SMITH",
                                    amounts=100.0, pattern_id=None, transaction_id="tx-in", start_line_id=10)
        groups = RecurrenceGrouper().detect(debits + credits, _default_rules())
        keys = sorted(g.group_key for g in groups)
        assert len(keys) == 2
        assert keys[0].endswith("|credit")
        assert keys[1].endswith("|debit")

    def test_irregular_group_is_penalised(self):
        occurrences = _make_occurrences(["2025-08-01", "2025-08-16"], description="CORNER CAFE",
                                        amounts=-4.0, pattern_id=None)
        groups = RecurrenceGrouper().detect(occurrences, _default_rules())
        assert len(groups) == 1
        assert groups[0].frequency == Frequency.IRREGULAR
        assert groups[0].confidence < 0.7

    def test_confidence_always_within_bounds(self):
        rule_set = _default_rules()
        cases = [
            _make_occurrences(_spaced_dates("2024-01-01", [30] * 11)),
            _make_occurrences(["2025-01-01", "2025-01-02"], pattern_id=None, description="ODD"),
            _make_occurrences(_spaced_dates("2025-01-01", [1, 200, 3]), pattern_id=None, description="ODDER"),
        ]
        for occurrences in cases:
            for group in RecurrenceGrouper().detect(occurrences, rule_set):
                assert 0.0 <= group.confidence <= 1.0

    def test_duplicate_line_through_overlapping_sessions_counted_once(self):
        occurrences = _make_occurrences(["2025-08-15", "2025-09-15"])
        repeated = _make_occurrences(["2025-09-15"], start_line_id=50)
        groups = RecurrenceGrouper().detect(occurrences + repeated, _default_rules())
        assert groups[0].occurrence_count == 2

    def test_stale_pattern_id_treated_as_unmatched(self):
        occurrences = _make_occurrences(["2025-08-15", "2025-09-15"], pattern_id="utility_rules/retired-rule")
        groups = RecurrenceGrouper().detect(occurrences, _default_rules())
        assert len(groups) == 1
        assert groups[0].rule_id is None
        assert groups[0].group_key.startswith("payee:")


# =============================================================================
# SUGGESTION BUILDER TESTS
# =============================================================================

def _open_processing_session(factory, user_id: str = "user-1") -> str:
    manager = SessionLifecycleManager(factory)
    session = manager.create_session(user_id, "statement.csv")
    manager.start_processing(session.id)
    return session.id


class TestEntryTitle:
    def test_provider_and_subcategory(self):
        assert entry_title("British Gas", "gas", "British Gas", Category.UTILITIES) == "British Gas - gas"

    def test_provider_only(self):
        assert entry_title("Local Council", None, "Local Council", Category.COUNCIL_TAX) == "Local Council"

    def test_other_category_renders_as_service(self):
        assert entry_title(None, None, "Acme Gym", Category.OTHER) == "Acme Gym - Service"


class TestSuggestionBuilder:
    def test_builds_suggestion_from_rule_group(self, session_factory):
        session_id = _open_processing_session(session_factory)
        rules = _default_rules()
        groups = RecurrenceGrouper().detect(
            _make_occurrences(["2025-08-15", "2025-09-15", "2025-10-15"]), rules,
        )

        suggestions = SuggestionBuilder(session_factory).build(session_id, groups, rules)

        assert len(suggestions) == 1
        s = suggestions[0]
        assert s.position == 0
        assert s.payee == "British Gas"
        assert s.category == Category.UTILITIES
        assert s.subcategory == "gas"
        assert float(s.amount) == -85.50
        assert s.frequency == Frequency.MONTHLY
        assert s.status == SuggestionStatus.PENDING
        assert s.suggested_entry.title == "British Gas - gas"
        assert s.suggested_entry.type == EntryType.UTILITY
        assert len(s.transactions) == 3
        assert s.transaction_ids == ["tx-1"]

    def test_unmatched_group_uses_extracted_payee(self, session_factory):
        session_id = _open_processing_session(session_factory)
        rules = _default_rules()
        dates = _spaced_dates("2025-08-01", [7, 7, 7])
        groups = RecurrenceGrouper().detect(
            _make_occurrences(dates, description="FPO ACME GYM", amounts=-10.0, pattern_id=None), rules,
        )
        suggestion = SuggestionBuilder(session_factory).build(session_id, groups, rules)[0]
        assert suggestion.payee == "Acme Gym"
        assert suggestion.suggested_entry.title == "Acme Gym - Service"
        assert suggestion.suggested_entry.type == EntryType.OTHER

    def test_low_confidence_groups_dropped(self, session_factory):
        session_id = _open_processing_session(session_factory)
        rules = _default_rules()
        groups = RecurrenceGrouper().detect(
            _make_occurrences(["2025-08-01", "2025-08-16"], description="CORNER CAFE", amounts=-4.0, pattern_id=None),
            rules,
        )
        assert SuggestionBuilder(session_factory).build(session_id, groups, rules) == []

    def test_rebuild_is_idempotent(self, session_factory):
        session_id = _open_processing_session(session_factory)
        rules = _default_rules()
        groups = RecurrenceGrouper().detect(
            _make_occurrences(["2025-08-15", "2025-09-15", "2025-10-15"]), rules,
        )
        builder = SuggestionBuilder(session_factory)

        first = builder.build(session_id, groups, rules)
        second = builder.build(session_id, groups, rules)

        assert len(first) == len(second) == 1
        assert first[0].id == second[0].id
        assert len(second[0].transactions) == 3

    def test_new_groups_append_after_existing_positions(self, session_factory):
        session_id = _open_processing_session(session_factory)
        rules = _default_rules()
        grouper = RecurrenceGrouper()
        builder = SuggestionBuilder(session_factory)

        gas = grouper.detect(_make_occurrences(["2025-08-15", "2025-09-15", "2025-10-15"]), rules)
        builder.build(session_id, gas, rules)

        netflix = grouper.detect(
            _make_occurrences(["2025-08-03", "2025-09-03", "2025-10-03"], description="NETFLIX.COM",
                              amounts=-10.99, pattern_id="subscription_rules/netflix-uk", transaction_id="tx-n"),
            rules,
        )
        suggestions = builder.build(session_id, gas + netflix, rules)

        assert [s.position for s in suggestions] == [0, 1]
        assert suggestions[0].payee == "British Gas"
        assert suggestions[1].payee == "Netflix"
