"""
Shared pytest setup.

Puts ``src`` on sys.path so tests import the package without installing
it, and provides a deterministic token counter and a fake clock.
"""

import sys
from pathlib import Path

import pytest

# Add the src directory to PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))


def word_count(text: str) -> int:
    """One token per whitespace-separated word."""
    return len(text.split())


class FakeClock:
    """Clock whose time only moves when slept or advanced."""

    def __init__(self, start: float = 0.0):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def counter():
    return word_count


@pytest.fixture
def clock():
    return FakeClock()
