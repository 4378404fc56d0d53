"""Test fixtures: sample pages and fake engine collaborators."""

from tests.fixtures.fakes import (
    GOOD_MEASUREMENT,
    GOOD_VITALS,
    FakeClock,
    FakeInsights,
    FakeJudge,
    FakePerformanceApi,
    FakeSource,
    SleepRecorder,
    TrackingCollector,
    make_collector,
)
from tests.fixtures.pages import BARE_HTML, SAMPLE_HTML

__all__ = [
    # Pages
    "SAMPLE_HTML",
    "BARE_HTML",
    # Fakes
    "GOOD_MEASUREMENT",
    "GOOD_VITALS",
    "FakeClock",
    "FakeInsights",
    "FakeJudge",
    "FakePerformanceApi",
    "FakeSource",
    "SleepRecorder",
    "TrackingCollector",
    "make_collector",
]
