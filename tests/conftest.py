"""pytest configuration.

The repo is usable without installing the package: when running `pytest` from
the repo root we want `import ratekeeper` to resolve to `./ratekeeper`, so the
root is forced onto `sys.path` here.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from ratekeeper.limiter import RateLimiter  # noqa: E402
from ratekeeper.store import SQLiteBucketStore, StoreUnavailable  # noqa: E402

T0 = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = T0) -> None:
        self.now = now_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class BrokenStore:
    """Bucket store whose every call fails like an unreachable database."""

    backend = "broken"

    def _fail(self, *args, **kwargs):
        raise StoreUnavailable("connection refused")

    init_schema = _fail
    upsert_and_increment = _fail
    peek = _fail
    remove = _fail
    remove_all = _fail
    sweep_expired = _fail
    count_expired = _fail
    stats = _fail


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> SQLiteBucketStore:
    s = SQLiteBucketStore(str(tmp_path / "buckets.sqlite"), busy_timeout_s=30.0)
    s.init_schema()
    return s


@pytest.fixture
def limiter(store, clock) -> RateLimiter:
    return RateLimiter(store, clock=clock)
