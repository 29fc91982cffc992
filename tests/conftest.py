"""
Pytest configuration and fixtures for portfolio-signals tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from tests.helpers import FakeClock, StubProvider, make_quote

ROOT_DIR = Path(__file__).resolve().parents[1]


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fixed_now():
    # Wednesday 2024-05-15 14:00 UTC == 10:00 New York (EDT)
    return datetime(2024, 5, 15, 14, 0, tzinfo=timezone.utc)


@pytest.fixture
def stub_provider():
    return StubProvider("primary", default=make_quote("AAPL", 100.0, source="primary"))


@pytest.fixture
def config_dir(tmp_path):
    """Copy of the shipped config with all state paths redirected into tmp_path."""
    app = yaml.safe_load((ROOT_DIR / "config" / "app.yaml").read_text())
    policy = yaml.safe_load((ROOT_DIR / "config" / "policy.yaml").read_text())

    app["logging"]["file"] = str(tmp_path / "logs" / "service.log")
    app["monitoring"]["metrics_enabled"] = False
    app["monitoring"]["healthcheck_enabled"] = False
    app["monitoring"]["alerts"]["enabled"] = False
    app["state"]["positions_file"] = str(tmp_path / "positions.json")
    app["state"]["history_db"] = str(tmp_path / "history.db")
    app["locks"]["backend"] = "memory"

    out = tmp_path / "config"
    out.mkdir()
    (out / "app.yaml").write_text(yaml.safe_dump(app))
    (out / "policy.yaml").write_text(yaml.safe_dump(policy))
    return out
