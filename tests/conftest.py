"""Shared fixtures for converge tests."""

import textwrap

import pytest

from converge.config import bind_variables, load_document, resolve_variables
from converge.providers import InMemoryProvider
from converge.state import StateManager
from converge.utils.sensitive import secret_registry


@pytest.fixture(autouse=True)
def clear_secrets():
    yield
    secret_registry.clear()


@pytest.fixture
def provider():
    return InMemoryProvider()


@pytest.fixture
def state_manager(tmp_path):
    manager = StateManager(str(tmp_path / "state" / "default.json"))
    manager.load_or_initialize()
    return manager


@pytest.fixture
def sleeps():
    """Records retry delays instead of sleeping."""
    return []


def make_document(text, overrides=None, environ=None):
    """Load YAML text and bind its variables."""
    document = load_document(textwrap.dedent(text), source="test.yaml")
    values = resolve_variables(document, overrides, environ=environ or {})
    return bind_variables(document, values)


@pytest.fixture
def document_from():
    return make_document
