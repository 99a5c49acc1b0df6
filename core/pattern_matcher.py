"""
pattern_matcher.py
-------------------
Classifies a transaction description against a resolved rule set.

Scoring per (rule, pattern):
    - Exact: the normalised pattern appears in the normalised description on
      token boundaries ("SSE" hits "SSE ENERGY DD" but not "ASSESSMENT").
      A trailing "$" anchors the pattern to the end of the description
      ("DD$" hits "NETFLIX DD"). Base score 1.0.
    - Fuzzy: rapidfuzz token_set_ratio / 100, only when no exact hit and only
      if it reaches settings.fuzzy_match_threshold. Anchored patterns are
      never matched fuzzily.

    candidate = clamp(base + rule.confidence_boost, 0, 1)

The winner is the highest candidate, then the longest matched pattern,
then exact before fuzzy. A winner below settings.min_confidence_threshold is
reported as no match.
"""

import logging
import re
from dataclasses import dataclass

from rapidfuzz import fuzz

from core.models import DetectionRuleSet, MatchResult, PatternRule, clamp01
from core.normalization import normalize_description

logger = logging.getLogger(__name__)


@dataclass
class _CompiledPattern:
    rule: PatternRule
    pattern: str                 # As written in the rule
    text: str                    # Normalised, without the "$" anchor
    anchored: bool
    regex: re.Pattern


def _compile_pattern(rule: PatternRule, pattern: str) -> _CompiledPattern:
    text = normalize_description(pattern)
    anchored = text.endswith("$")
    if anchored:
        text = text[:-1].rstrip()
    regex = r"(?<![A-Z0-9])" + re.escape(text) + r"(?![A-Z0-9])"
    if anchored:
        regex += r"$"
    return _CompiledPattern(rule=rule, pattern=pattern, text=text, anchored=anchored, regex=re.compile(regex))


class PatternMatcher:
    """
    Usage:
        matcher = PatternMatcher()
        result = matcher.match("BRITISH GAS DD", rule_set)   # MatchResult | None
        matcher.classify(transaction_row, rule_set)          # sets pattern_* fields
    """

    def __init__(self):
        # id(rule_set) -> (rule_set, compiled patterns)
        self._compiled: dict[int, tuple[DetectionRuleSet, list[_CompiledPattern]]] = {}

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def match(self, description: str, rule_set: DetectionRuleSet) -> MatchResult | None:
        """Best rule for a description, or None when nothing clears the threshold."""
        normalized = normalize_description(description)
        if not normalized:
            return None

        settings = rule_set.settings
        best: MatchResult | None = None
        best_key: tuple | None = None

        for compiled in self._patterns_for(rule_set):
            if not compiled.text:
                continue

            if compiled.regex.search(normalized):
                base, exact = 1.0, True
            elif compiled.anchored:
                continue
            else:
                base = fuzz.token_set_ratio(compiled.text, normalized) / 100.0
                if base < settings.fuzzy_match_threshold:
                    continue
                exact = False

            confidence = clamp01(base + compiled.rule.confidence_boost)
            key = (confidence, len(compiled.text), exact)
            if best_key is None or key > best_key:
                best_key = key
                best = MatchResult(
                    rule_id=compiled.rule.rule_id,
                    rule_name=compiled.rule.name,
                    matched_pattern=compiled.pattern,
                    base_score=round(base, 4),
                    confidence=round(confidence, 4),
                    exact=exact,
                )

        if best is None or best.confidence < settings.min_confidence_threshold:
            return None
        return best

    def classify(self, transaction, rule_set: DetectionRuleSet) -> MatchResult | None:
        """
        Writes the match outcome onto a transaction row (or anything with
        description / pattern_matched / pattern_confidence / pattern_id).
        """
        result = self.match(transaction.description, rule_set)
        if result is None:
            transaction.pattern_matched = False
            transaction.pattern_confidence = 0.0
            transaction.pattern_id = None
        else:
            transaction.pattern_matched = True
            transaction.pattern_confidence = result.confidence
            transaction.pattern_id = result.rule_id
        return result

    def classify_all(self, transactions, rule_set: DetectionRuleSet) -> int:
        """Classifies every transaction given. Returns how many matched a rule."""
        matched = 0
        for transaction in transactions:
            if self.classify(transaction, rule_set) is not None:
                matched += 1
        logger.info(f"Pattern matching: {matched} matched against '{rule_set.name}'.")
        return matched

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _patterns_for(self, rule_set: DetectionRuleSet) -> list[_CompiledPattern]:
        cached = self._compiled.get(id(rule_set))
        if cached is not None and cached[0] is rule_set:
            return cached[1]

        compiled = [
            _compile_pattern(rule, pattern)
            for rule in rule_set.active_rules()
            for pattern in rule.patterns
        ]
        self._compiled = {id(rule_set): (rule_set, compiled)}
        return compiled
