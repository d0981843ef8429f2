from __future__ import annotations

import pytest

from docvault.config import reset_config_cache
from docvault.logging_setup import set_correlation_id


@pytest.fixture(autouse=True)
def _isolated_runtime(monkeypatch):
    """Keep process-wide config and correlation state from leaking between tests."""
    monkeypatch.setenv("BACKEND_MODE", "memory")
    reset_config_cache()
    set_correlation_id(None)
    yield
    reset_config_cache()
    set_correlation_id(None)
