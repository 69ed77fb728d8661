"""
Pytest configuration for reply-sync tests.

Test Tier System:
- fast (default): Pure unit tests, all I/O mocked
- medium: Tests that exercise several components together with in-memory fakes
- slow: Tests that need a live PostgreSQL database or Intercom workspace

Run tiers:
- pytest                          # All collected tests
- pytest -m fast                  # Fast only (quick feedback)
- pytest -m "not slow"            # Fast + Medium (pre-merge)

Note: Unmarked tests are auto-assigned to 'fast' tier. To add a new test:
- No marker needed for fast (unit) tests
- Add @pytest.mark.medium for multi-component tests
- Tests marked @pytest.mark.integration (without tier) default to 'medium'

Credential Safety:
- A fake INTERCOM_ACCESS_TOKEN is force-set unless slow tests are selected,
  so a mock that fails to patch cannot reach the real API with a real token.
"""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from reply_sync.config import SyncSettings


# =============================================================================
# Tier Auto-Assignment
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """
    Automatically assign tier markers to unmarked tests.

    Tests are fast by default unless explicitly marked as medium or slow.
    Tests marked with @pytest.mark.integration (but no tier) are assigned
    to 'medium'.
    """
    for item in items:
        has_tier = (
            list(item.iter_markers(name='fast')) or
            list(item.iter_markers(name='medium')) or
            list(item.iter_markers(name='slow'))
        )
        if has_tier:
            continue

        # Skip if test is marked as skip (don't assign tier to skipped tests)
        if list(item.iter_markers(name='skip')):
            continue

        if list(item.iter_markers(name='integration')):
            item.add_marker(pytest.mark.medium)
            continue

        item.add_marker(pytest.mark.fast)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Force a fake Intercom token unless slow tests were explicitly selected."""
    markexpr = getattr(config.option, 'markexpr', '') or ''
    includes_slow_tests = 'slow' in markexpr and 'not slow' not in markexpr

    if includes_slow_tests:
        os.environ.setdefault("INTERCOM_ACCESS_TOKEN", "test-fake-intercom-token")
    else:
        os.environ["INTERCOM_ACCESS_TOKEN"] = "test-fake-intercom-token"


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def fixed_now():
    """A Wednesday, so the most recent week start is three days earlier."""
    return datetime(2024, 5, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    """Settings with no page delay and no deadline."""
    return SyncSettings(
        intercom_access_token="test-fake-intercom-token",
        database_url="postgresql://localhost:5432/reply_sync_test",
        page_delay_seconds=0,
        live_deadline_seconds=0,
    )
