"""Test helpers for portfolio-signals test suite"""

from tests.helpers.fakes import (
    FakeClock,
    recording_alerts,
    RecordingNotifier,
    StubProvider,
    make_bars,
    make_position,
    make_quote,
)

__all__ = [
    "FakeClock",
    "recording_alerts",
    "RecordingNotifier",
    "StubProvider",
    "make_bars",
    "make_position",
    "make_quote",
]
