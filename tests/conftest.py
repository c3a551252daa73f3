import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `melody_app` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_process_state():
    # rate limiter and catalog cache are process-wide; tests use fresh databases
    import melody_app.main as app_main
    from melody_app.cache import get_cache
    app_main._RATE_LIMIT_STORE.clear()
    get_cache().clear()
    yield
    app_main.app.dependency_overrides.clear()
