"""
Pytest configuration and shared fixtures for pyclosure tests.

This module contains:
- Command-line options (--analyzer)
- Shared fixtures for analyzers and serializers
- Project configuration fixtures
"""

import pytest
import toml
from pathlib import Path

from pyclosure import CONFIG, Serializer, TokenAnalyzer, TreeAnalyzer

ANALYZERS = {
    "tree": TreeAnalyzer,
    "token": TokenAnalyzer,
}

SIGNING_KEY = "hashkey"

# =============================================================================
# Command Line Options
# =============================================================================


def pytest_addoption(parser):
    """Add custom command-line options for pytest."""
    parser.addoption(
        "--analyzer",
        action="store",
        default=None,
        choices=sorted(ANALYZERS),
        help="Only run analyzer-parametrized tests with this strategy (default: both)",
    )


def pytest_generate_tests(metafunc):
    """Parametrize tests based on command-line options."""
    option_value = metafunc.config.option.analyzer
    if "analyzer_name" in metafunc.fixturenames:
        names = [option_value] if option_value is not None else list(ANALYZERS)
        metafunc.parametrize("analyzer_name", names)


# =============================================================================
# Project Configuration Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def load_pyproject_toml():
    """Load and parse the pyproject.toml file."""
    try:
        with open(Path(__file__).parent.parent / "pyproject.toml", "r") as f:
            data = toml.load(f)
        return data
    except toml.TomlDecodeError as e:
        pytest.fail(f"Failed to load pyproject.toml: {e}")


@pytest.fixture
def config():
    """The global CONFIG, restored after the test."""
    saved = CONFIG.APP.model_dump()
    yield CONFIG
    for key, value in saved.items():
        setattr(CONFIG.APP, key, value)


# =============================================================================
# Analyzer and Serializer Fixtures
# =============================================================================


@pytest.fixture
def analyzer(analyzer_name: str):
    """An instance of the analyzer strategy under test."""
    return ANALYZERS[analyzer_name]()


@pytest.fixture
def serializer(analyzer):
    """Unsigned serializer using the analyzer under test."""
    return Serializer(analyzer)


@pytest.fixture
def signed_serializer(analyzer):
    """Serializer using the analyzer under test and a signing key."""
    return Serializer(analyzer, signing_key=SIGNING_KEY)
