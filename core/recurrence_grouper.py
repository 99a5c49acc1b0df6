"""
recurrence_grouper.py
----------------------
Rule-aware recurring payment detection.

Answers one question for a set of dated statement occurrences:

    "Which of these payments repeat, how often, and how sure are we?"

Output: a TransactionGroup per qualifying group. Groups are consumed by the
suggestion builder, which turns them into user-facing suggestions.

Design decisions:
    - Grouping key is the matched rule ("rule:<pattern_id>") when a rule
      matched, otherwise a fuzzy payee cluster ("payee:<representative>").
      Debits and credits never share a group.
    - Members whose amount strays more than amount_variance_tolerance from
      the group median are dropped before anything else is measured.
    - Cadence detection uses inter-occurrence gap analysis against the
      frequency bands in config.yaml, not calendar binning.
    - Thresholds come from the rule set's settings and config.yaml.
"""

import logging
from typing import List

import numpy as np
import pandas as pd
from rapidfuzz import fuzz

from config.config_loader import get_matching_config, get_recurrence_config
from core.models import (
    Category,
    DetectionRuleSet,
    Frequency,
    Occurrence,
    TransactionGroup,
    TransactionStatus,
    clamp01,
)
from core.normalization import extract_payee_name

logger = logging.getLogger(__name__)


class RecurrenceGrouper:
    """
    Groups occurrences into recurring-payment candidates.

    Usage:
        grouper = RecurrenceGrouper()
        groups = grouper.detect(occurrences, rule_set)
    """

    def __init__(self):
        self.config = get_recurrence_config()
        self.default_min_occurrences = int(self.config["default_min_occurrences"])
        self.min_fit_ratio = float(self.config["min_fit_ratio"])
        self.frequency_bands = self.config["frequency_bands"]
        self.weights = self.config["confidence_weights"]
        self.occurrence_bonus = self.config["occurrence_bonus"]
        self.irregular_penalty = float(self.config["irregular_penalty"])
        self.unmatched_confidence = float(get_matching_config()["unmatched_base_confidence"])

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def detect(self, occurrences: List[Occurrence], rule_set: DetectionRuleSet) -> List[TransactionGroup]:
        """
        Run recurrence detection over one user's occurrences.

        Args:
            occurrences: Statement occurrences with their transaction's
                pattern match data.
            rule_set: The user's resolved rule set (tolerances, rule
                min_occurrences, categories).

        Returns:
            List of TransactionGroup, one per qualifying group, ordered by
            first occurrence date.
        """
        df = self._prepare(occurrences, rule_set)

        if df.empty:
            return []

        results: List[TransactionGroup] = []

        for group_key, group in df.groupby("group_key", sort=False):
            group_obj = self._build_group(group_key, group, rule_set)
            if group_obj is not None:
                results.append(group_obj)

        results.sort(key=lambda g: (g.first_seen, g.group_key))
        logger.info(f"Recurrence grouping: {len(df)} occurrences -> {len(results)} candidate groups.")
        return results

    def infer_frequency(self, gaps: np.ndarray) -> tuple[Frequency, float]:
        """
        Classifies consecutive day gaps into a frequency band.

        For each band the fit ratio is the fraction of gaps inside
        [min_gap_days, max_gap_days]. The best band with fit >= min_fit_ratio
        wins; ties go to the band whose expected gap is nearest the median gap.

        Returns:
            Tuple of (frequency, cadence_consistency). Consistency is
            1 - 2 * mean relative deviation from the band's expected gap,
            and 0.0 for irregular.
        """
        gaps = np.asarray(gaps, dtype=float)
        if len(gaps) == 0:
            return (Frequency.IRREGULAR, 0.0)

        median_gap = float(np.median(gaps))
        best: tuple | None = None
        best_name = None

        for band_name, band in self.frequency_bands.items():
            in_window = np.sum((gaps >= band["min_gap_days"]) & (gaps <= band["max_gap_days"]))
            fit_ratio = in_window / len(gaps)
            if fit_ratio < self.min_fit_ratio:
                continue

            # Higher fit first, then nearest expected gap
            key = (fit_ratio, -abs(band["expected_gap_days"] - median_gap))
            if best is None or key > best:
                best = key
                best_name = band_name

        if best_name is None:
            return (Frequency.IRREGULAR, 0.0)

        expected = float(self.frequency_bands[best_name]["expected_gap_days"])
        deviation = float(np.mean(np.abs(gaps - expected) / expected))
        return (Frequency(best_name), round(clamp01(1.0 - 2.0 * deviation), 4))

    # -------------------------------------------------------------------------
    # INTERNAL: DATA PREPARATION
    # -------------------------------------------------------------------------

    def _prepare(self, occurrences: List[Occurrence], rule_set: DetectionRuleSet) -> pd.DataFrame:
        """
        Builds the working frame and assigns every occurrence a group key.
        """
        if not occurrences:
            return pd.DataFrame()

        df = pd.DataFrame([vars(o) for o in occurrences])
        df["date"] = pd.to_datetime(df["date"])
        df["amount"] = df["amount"].astype(float)

        # The same statement line can reach us through overlapping sessions.
        df = df.drop_duplicates(subset=["transaction_id", "date"]).copy()

        # A pattern_id only counts if the rule is still active in this set.
        active_ids = {rule.rule_id for rule in rule_set.active_rules()}
        df["rule_id"] = df["pattern_id"].where(df["pattern_matched"] & df["pattern_id"].isin(active_ids))
        df["payee"] = df["description"].map(extract_payee_name)
        df["direction"] = np.where(df["amount"] < 0, "debit", "credit")

        clusters = self._cluster_payees(
            df.loc[df["rule_id"].isna(), "payee"],
            rule_set.settings.fuzzy_match_threshold,
        )
        base_key = np.where(
            df["rule_id"].notna(),
            "rule:" + df["rule_id"].fillna("").astype(str),
            "payee:" + df["payee"].map(lambda p: clusters.get(p, p)).str.upper(),
        )
        df["group_key"] = pd.Series(base_key, index=df.index) + "|" + df["direction"]

        df = df.sort_values(["group_key", "date", "line_id"]).reset_index(drop=True)
        return df

    @staticmethod
    def _cluster_payees(payees: pd.Series, threshold: float) -> dict[str, str]:
        """
        Greedy clustering of unmatched payee names. Most frequent names become
        representatives first; every other name joins the first
        representative it is similar enough to.

        Returns:
            Mapping payee -> representative payee.
        """
        representatives: list[str] = []
        mapping: dict[str, str] = {}

        for payee in payees.value_counts().index:
            for rep in representatives:
                if fuzz.ratio(payee.upper(), rep.upper()) / 100.0 >= threshold:
                    mapping[payee] = rep
                    break
            else:
                representatives.append(payee)
                mapping[payee] = payee

        return mapping

    # -------------------------------------------------------------------------
    # INTERNAL: GROUP CONSTRUCTION
    # -------------------------------------------------------------------------

    def _build_group(self, group_key: str, group: pd.DataFrame, rule_set: DetectionRuleSet) -> TransactionGroup | None:
        """
        Applies the amount filter, the minimum-occurrence gate and scoring.

        Returns None if the group does not qualify as a candidate.
        """
        rule_id = group["rule_id"].iloc[0]
        rule = rule_set.get_rule(rule_id) if isinstance(rule_id, str) else None
        min_occurrences = rule.min_occurrences if rule else self.default_min_occurrences
        tolerance = float(rule_set.settings.amount_variance_tolerance)

        # --- Amount filter ---
        abs_amounts = group["amount"].abs()
        median = float(np.median(abs_amounts))
        if median > 0:
            rel_dev = (abs_amounts - median).abs() / median
        else:
            rel_dev = (abs_amounts - median).abs()
        kept = group[rel_dev <= tolerance + 1e-9].copy()
        kept["rel_dev"] = rel_dev[rel_dev <= tolerance + 1e-9]
        dropped = len(group) - len(kept)

        # --- Minimum-occurrence gate ---
        if len(kept) < min_occurrences:
            return None

        # --- Cadence ---
        dates = kept["date"].sort_values().values
        gaps = np.diff(dates).astype("timedelta64[D]").astype(float)
        frequency, cadence_consistency = self.infer_frequency(gaps)

        # --- Amount statistics ---
        amounts = kept["amount"].abs().values
        mean_amt = float(np.mean(amounts))
        median_amt = float(np.median(amounts))
        std_amt = float(np.std(amounts)) if len(amounts) > 1 else 0.0
        amount_cv = (std_amt / mean_amt) if mean_amt > 0 else 0.0
        amount_consistency = clamp01(1.0 - 2.0 * amount_cv)

        confidence = self._compute_confidence(
            kept, tolerance, frequency, cadence_consistency, amount_consistency, min_occurrences,
        )

        members = [
            Occurrence(
                line_id=int(row.line_id),
                transaction_id=str(row.transaction_id),
                date=row.date.date(),
                description=row.description,
                amount=float(row.amount),
                original_text=row.original_text if isinstance(row.original_text, str) else None,
                pattern_matched=bool(row.pattern_matched),
                pattern_confidence=float(row.pattern_confidence),
                pattern_id=row.pattern_id if isinstance(row.pattern_id, str) else None,
                transaction_status=TransactionStatus(row.transaction_status),
            )
            for row in kept.itertuples(index=False)
        ]

        direction_sign = -1.0 if group_key.endswith("|debit") else 1.0
        return TransactionGroup(
            group_key=group_key,
            category=rule.category if rule else Category.OTHER,
            rule_id=rule.rule_id if rule else None,
            frequency=frequency,
            cadence_consistency=cadence_consistency,
            median_amount=round(direction_sign * median_amt, 2),
            mean_amount=round(direction_sign * mean_amt, 2),
            amount_consistency=round(amount_consistency, 4),
            confidence=confidence,
            occurrence_count=len(kept),
            first_seen=members[0].date,
            last_seen=members[-1].date,
            members=members,
            dropped_members=dropped,
        )

    # -------------------------------------------------------------------------
    # INTERNAL: CONFIDENCE
    # -------------------------------------------------------------------------

    def _compute_confidence(
        self,
        kept: pd.DataFrame,
        tolerance: float,
        frequency: Frequency,
        cadence_consistency: float,
        amount_consistency: float,
        min_occurrences: int,
    ) -> float:
        """
        Computes a 0.0–1.0 group confidence using the weights from config:
            - pattern_weight: weighted mean of member pattern confidence.
              Unmatched members count as unmatched_base_confidence; a
              member's weight falls from 1.0 to 0.5 as its amount moves to
              the edge of the tolerance band.
            - cadence_weight: cadence consistency.
            - amount_weight: amount consistency.
        Plus an occurrence bonus per member above the minimum (capped), minus
        the irregular penalty. Clamped to [0, 1].
        """
        w = self.weights

        member_conf = np.where(kept["rule_id"].notna(), kept["pattern_confidence"].astype(float), self.unmatched_confidence)
        if tolerance > 0:
            member_weights = 1.0 - 0.5 * (kept["rel_dev"].values / tolerance)
        else:
            member_weights = np.ones(len(kept))
        pattern_score = float(np.average(member_conf, weights=member_weights))

        score = (
            w["pattern_weight"] * pattern_score
            + w["cadence_weight"] * cadence_consistency
            + w["amount_weight"] * amount_consistency
        )

        extra_members = max(len(kept) - min_occurrences, 0)
        score += min(extra_members * self.occurrence_bonus["per_extra_member"], self.occurrence_bonus["max_bonus"])

        if frequency == Frequency.IRREGULAR:
            score -= self.irregular_penalty

        return round(clamp01(score), 4)
