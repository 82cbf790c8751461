"""Shared fixtures for unit and feature tests."""

from __future__ import annotations

import pytest

from tests.helpers.fakes import FakeEnrichment, FakeIndex


@pytest.fixture
def fake_index() -> FakeIndex:
    """Return an empty in-memory index."""
    return FakeIndex()


@pytest.fixture
def fake_enrichment() -> FakeEnrichment:
    """Return an enrichment stand-in that records calls."""
    return FakeEnrichment()
