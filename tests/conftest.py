"""
Pytest configuration and shared fixtures.
"""
import sys
from pathlib import Path
from unittest.mock import Mock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from patient_risk_assessment import Config


def make_response(status=200, body=None, json_error=False):
    r = Mock()
    r.status_code = status
    r.ok = 200 <= status < 300
    if json_error:
        r.json.side_effect = ValueError("no JSON")
    else:
        r.json.return_value = body
    return r


def page(records, has_next):
    return make_response(200, {"data": records, "pagination": {"hasNext": has_next}})


@pytest.fixture
def config() -> Config:
    return Config(api_key="test-key", base_url="http://test/api")


@pytest.fixture
def sleeps():
    """Fake sleep that records the requested delays."""
    calls = []

    def sleep(seconds):
        calls.append(seconds)

    sleep.calls = calls
    return sleep
