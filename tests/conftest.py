"""Shared fixtures for the wikirunner test suite."""

import pytest

from fakes import FakeEmbedder, FakeSource


@pytest.fixture
def line_graph():
    """A -> B -> C -> D, with a distractor X hanging off A."""
    return FakeSource({
        "A": ["B", "X"],
        "B": ["A", "C"],
        "C": ["B", "D"],
        "D": ["C"],
        "X": ["A"],
    })


@pytest.fixture
def fake_embedder():
    return FakeEmbedder({
        "Cheese": [1.0, 0.0, 0.0],
        "Milk": [0.9, 0.1, 0.0],
        "Moon": [0.0, 1.0, 0.0],
        "Rocket": [0.1, 0.9, 0.0],
    })
