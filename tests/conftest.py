# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from stageflow.core.engine import EngineConfig, Stage, StageEngine, TimerSpec, Transition  # noqa: E402


class FakeClock:
    """Monotonic clock (seconds) advanced by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000


@pytest.fixture
def fetch_config():
    """idle -> loading -> success | error, with retry back to loading"""
    return EngineConfig(
        initial="idle",
        stages=[
            Stage(name="idle", transitions=[Transition(event="fetch", target="loading")]),
            Stage(
                name="loading",
                effect_name="spinner",
                transitions=[
                    Transition(event="resolve", target="success"),
                    Transition(event="reject", target="error"),
                ],
            ),
            Stage(name="success", effect_name="confetti"),
            Stage(name="error", transitions=[Transition(event="retry", target="loading")]),
        ],
        initial_data={"attempts": 0},
    )


@pytest.fixture
def engine(fetch_config):
    return StageEngine(fetch_config, name="test-engine")


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def timed_config():
    """Stage 'waiting' auto-sends 'timeout' after 5s"""
    return EngineConfig(
        initial="waiting",
        stages=[
            Stage(
                name="waiting",
                transitions=[
                    Transition(event="timeout", target="expired"),
                    Transition(event="proceed", target="done"),
                ],
                timers=[TimerSpec(duration_ms=5000, event="timeout")],
            ),
            Stage(name="expired", transitions=[Transition(event="restart", target="waiting")]),
            Stage(name="done"),
        ],
    )


def _fast_timer_config(duration_ms: float = 20, event: str = "timeout") -> EngineConfig:
    """'waiting' auto-sends ``event`` after ``duration_ms``"""
    return EngineConfig(
        initial="waiting",
        stages=[
            Stage(
                name="waiting",
                transitions=[
                    Transition(event="timeout", target="expired"),
                    Transition(event="proceed", target="done"),
                    Transition(event="again", target="waiting"),
                ],
                timers=[TimerSpec(duration_ms=duration_ms, event=event)],
            ),
            Stage(name="expired", transitions=[Transition(event="restart", target="waiting")]),
            Stage(name="done", transitions=[Transition(event="back", target="waiting")]),
        ],
    )


@pytest.fixture
def fast_timer_config():
    """Factory for configs with millisecond timers that fire during a test"""
    return _fast_timer_config
