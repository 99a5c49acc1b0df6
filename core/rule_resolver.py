"""
rule_resolver.py
-----------------
Chooses the detection rule set that applies to a user.

Resolution order:
    1. The user's own override document (custom_user = user_id).
    2. The single system default (is_default = true).
    3. Neither exists -> RulesNotFoundError.

The default is seeded from config/default_rules.yaml. Seeding is idempotent:
if a default already exists nothing is written. The partial unique index on
is_default guarantees at most one default even if two processes seed at once.
"""

import logging
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from config.config_loader import load_default_rules_document
from core.errors import RulesNotFoundError, ValidationError
from core.models import DetectionRuleSet
from storage.tables import DetectionRulesRow

logger = logging.getLogger(__name__)


class RuleResolver:
    """
    Usage:
        resolver = RuleResolver(session_factory)
        resolver.seed_default_rules()
        rule_set = resolver.resolve(user_id)
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def resolve(self, user_id: str | None) -> DetectionRuleSet:
        """
        Returns the user's override set if one exists, else the default.

        Raises:
            RulesNotFoundError: If there is no override and no default.
        """
        with self.session_factory() as db:
            row = None
            if user_id:
                row = db.execute(
                    select(DetectionRulesRow).where(DetectionRulesRow.custom_user == user_id)
                ).scalar_one_or_none()
            if row is None:
                row = db.execute(
                    select(DetectionRulesRow).where(DetectionRulesRow.is_default.is_(True))
                ).scalar_one_or_none()
            if row is None:
                raise RulesNotFoundError("No detection rules configured (no user override and no default)")

            rule_set = row.to_rule_set()

        logger.debug(f"Resolved rule set '{rule_set.name}' for user {user_id}.")
        return rule_set

    def seed_default_rules(self, rules_path: str | None = None) -> DetectionRuleSet:
        """Inserts the packaged default rule set unless a default already exists."""
        with self.session_factory() as db:
            existing = db.execute(
                select(DetectionRulesRow).where(DetectionRulesRow.is_default.is_(True))
            ).scalar_one_or_none()
            if existing is not None:
                logger.info(f"Default rule set already present: '{existing.name}'.")
                return existing.to_rule_set()

            rule_set = DetectionRuleSet.from_document(load_default_rules_document(rules_path), is_default=True)
            row = self._row_from_rule_set(rule_set, created_by="system")
            row.is_default = True
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("Default rule set was seeded concurrently; using the stored one.")
                existing = db.execute(
                    select(DetectionRulesRow).where(DetectionRulesRow.is_default.is_(True))
                ).scalar_one()
                return existing.to_rule_set()

            logger.info(f"Seeded default rule set '{row.name}' ({sum(len(r) for r in rule_set.rules.values())} rules).")
            return row.to_rule_set()

    def save_custom_rules(self, user_id: str, document: Dict[str, Any]) -> DetectionRuleSet:
        """
        Creates or replaces the override rule set for one user.

        The document has the same shape as default_rules.yaml.

        Raises:
            ValidationError: If user_id is missing or the document is invalid.
        """
        if not user_id:
            raise ValidationError("user_id is required for a custom rule set")

        rule_set = DetectionRuleSet.from_document(document, custom_user=user_id)

        with self.session_factory() as db:
            row = db.execute(
                select(DetectionRulesRow).where(DetectionRulesRow.custom_user == user_id)
            ).scalar_one_or_none()

            if row is None:
                row = self._row_from_rule_set(rule_set, created_by=user_id)
                row.custom_user = user_id
                db.add(row)
            else:
                row.name = rule_set.name
                row.description = rule_set.description
                row.version = rule_set.version
                row.rules = rule_set.rules_document()
                row.settings = rule_set.settings.to_dict()
                row.last_updated_by = user_id
            db.commit()

            logger.info(f"Saved custom rule set '{row.name}' for user {user_id}.")
            return row.to_rule_set()

    def delete_custom_rules(self, user_id: str) -> bool:
        """Removes a user's override. Returns False if there was none."""
        with self.session_factory() as db:
            row = db.execute(
                select(DetectionRulesRow).where(DetectionRulesRow.custom_user == user_id)
            ).scalar_one_or_none()
            if row is None:
                return False
            db.delete(row)
            db.commit()
        logger.info(f"Deleted custom rule set for user {user_id}.")
        return True

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_from_rule_set(rule_set: DetectionRuleSet, created_by: str) -> DetectionRulesRow:
        return DetectionRulesRow(
            name=rule_set.name,
            description=rule_set.description,
            version=rule_set.version,
            rules=rule_set.rules_document(),
            settings=rule_set.settings.to_dict(),
            is_default=False,
            created_by=created_by,
            last_updated_by=created_by,
        )
