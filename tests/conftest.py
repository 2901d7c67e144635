"""
Test Configuration
==================

Pytest configuration with fixtures for all test types.
Provides test settings, validator and parser instances, and sample documents.
"""

import copy
import pytest
from typing import Dict, Any
from unittest.mock import patch

import yaml
from pydantic_settings import SettingsConfigDict

# Import application modules
from layered_dsl.config.settings import Settings
from layered_dsl.core.dsl.parser import YAMLDSLParser, JSONDSLParser
from layered_dsl.core.dsl.shapes import ShapeChecker
from layered_dsl.core.dsl.symbols import SymbolTable
from layered_dsl.core.dsl.validator import DSLValidator

from tests.data.sample_dsl_documents import BILLING_DOCUMENT_YAML, TASKS_DOCUMENT


# Test settings override
class TestSettings(Settings):
    """Test-specific settings."""

    environment: str = "testing"
    debug: bool = True
    log_level: str = "DEBUG"

    model_config = SettingsConfigDict(env_file=".env.test", env_prefix="LAYERED_DSL_")


@pytest.fixture(scope="session")
def test_settings() -> TestSettings:
    """Test settings fixture."""
    return TestSettings()


@pytest.fixture(scope="session", autouse=True)
def override_settings(test_settings: TestSettings):
    """Override application settings for testing."""
    with patch("layered_dsl.config.settings.settings", test_settings):
        yield test_settings


@pytest.fixture
def validator(test_settings: TestSettings) -> DSLValidator:
    """DSL validator using the test settings."""
    return DSLValidator(test_settings)


@pytest.fixture
def yaml_parser(test_settings: TestSettings) -> YAMLDSLParser:
    """YAML parser using the test settings."""
    return YAMLDSLParser(test_settings)


@pytest.fixture
def json_parser(test_settings: TestSettings) -> JSONDSLParser:
    """JSON parser using the test settings."""
    return JSONDSLParser(test_settings)


@pytest.fixture
def shapes() -> ShapeChecker:
    """Cerberus shape checker."""
    return ShapeChecker()


@pytest.fixture
def symbols() -> SymbolTable:
    """Empty symbol table."""
    return SymbolTable()


@pytest.fixture
def billing_yaml() -> str:
    """Complete clean document as YAML text."""
    return BILLING_DOCUMENT_YAML


@pytest.fixture
def billing_document() -> Dict[str, Any]:
    """Complete clean document as a raw mapping."""
    return yaml.safe_load(BILLING_DOCUMENT_YAML)


@pytest.fixture
def tasks_document() -> Dict[str, Any]:
    """Small clean document as a raw mapping."""
    return copy.deepcopy(TASKS_DOCUMENT)


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on file paths."""
    for item in items:
        # Add markers based on file path
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
