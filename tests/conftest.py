# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.infra.metrics import get_metrics_collector  # noqa: E402


@pytest.fixture(autouse=True)
def reset_metrics():
    """Counters are process-global; start every test from zero."""
    get_metrics_collector().reset()
    yield


@pytest.fixture
def customer_headers():
    return {"X-User-Id": "11111111-1111-1111-1111-111111111111", "X-User-Role": "customer"}


@pytest.fixture
def worker_headers():
    return {"X-User-Id": "22222222-2222-2222-2222-222222222222", "X-User-Role": "employee"}
