"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors).
"""
import os
import sys
from pathlib import Path
import pytest

# Ensure the repository root is importable so `backend.*` resolves.
REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_claims_sync_telemetry():
    """Clear in-memory counters so outcome assertions do not leak across tests."""
    from backend.claims_sync import telemetry

    telemetry.reset_for_tests()
    yield
    telemetry.reset_for_tests()


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Ensure a dev environment and no leftover claims-sync overrides per test.

    Why:
        Several suites opt into prod semantics or tune timeouts via env.
        Clearing them keeps config decisions deterministic in full runs.
    """
    for var in (
        "GUSTAV_ENV",
        "CLAIMS_SYNC_GUARD_BACKEND",
        "CLAIMS_SYNC_PROFILE_TIMEOUT",
        "CLAIMS_SYNC_WRITE_TIMEOUT",
        "CLAIMS_SYNC_MAX_RETRIES",
        "CLAIMS_SYNC_BACKOFF_SECONDS",
        "CLAIMS_SYNC_LEASE_SECONDS",
        "CLAIMS_SYNC_WEBHOOK_TOKEN",
        "KC_ADMIN_USERNAME",
        "KC_ADMIN_PASSWORD",
        "KEYCLOAK_CA_BUNDLE",
    ):
        monkeypatch.delenv(var, raising=False)
    if not os.getenv("KC_ADMIN_CLIENT_SECRET"):
        monkeypatch.setenv("KC_ADMIN_CLIENT_SECRET", "TEST_ONLY_NOT_USED")
    yield
