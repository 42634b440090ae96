from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

from ratekeeper.limiter import RateLimiter
from ratekeeper.store import SQLiteBucketStore


def test_concurrent_consumers_never_exceed_the_limit(tmp_path):
    limit, extra = 10, 15
    db_path = str(tmp_path / "concurrency.sqlite")
    SQLiteBucketStore(db_path).init_schema()

    # Each worker gets its own store handle, like separate serverless instances
    # pointed at the same database.
    start = threading.Barrier(limit + extra)

    def _hit(_: int):
        worker_limiter = RateLimiter(SQLiteBucketStore(db_path, busy_timeout_s=30.0))
        start.wait()
        return worker_limiter.consume("upload:1.2.3.4", limit, 60_000)

    with ThreadPoolExecutor(max_workers=limit + extra) as pool:
        results = list(pool.map(_hit, range(limit + extra)))

    allowed = [r for r in results if r.allowed]
    denied = [r for r in results if not r.allowed]
    assert len(allowed) == limit
    assert len(denied) == extra

    # Every increment was serialized: each remaining value was handed out once.
    assert sorted(r.remaining for r in allowed) == list(range(limit))
    assert all(r.retry_after_seconds >= 1 for r in denied)

    bucket = SQLiteBucketStore(db_path).peek("upload:1.2.3.4")
    assert bucket is not None
    assert bucket.count == limit + extra
