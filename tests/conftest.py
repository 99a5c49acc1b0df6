"""
Shared fixtures: config isolation and a fresh in-memory database per test.
"""

import sys
import os

import pytest

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import reset_config
from core.rule_resolver import RuleResolver
from storage.db import setup_database


@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def session_factory():
    """Empty in-memory SQLite database with the schema created."""
    return setup_database("sqlite://")


@pytest.fixture
def seeded_factory(session_factory):
    """In-memory database with the default detection rules seeded."""
    RuleResolver(session_factory).seed_default_rules()
    return session_factory
