from __future__ import annotations

import argparse
import json

from .policies import UnknownEndpoint, check_rate_limit


def _limiter():
    from .dependencies import build_limiter

    return build_limiter()


def cmd_init_db() -> None:
    limiter = _limiter()
    print(f"Schema ready on backend={getattr(limiter.store, 'backend', 'unknown')}")


def cmd_sweep(*, apply: bool, now: int | None) -> None:
    """Count expired buckets and optionally delete them."""
    from .maintenance import sweep_expired_buckets

    limiter = _limiter()
    now_ms = limiter.clock() if now is None else int(now)
    expired = sweep_expired_buckets(limiter, now=now_ms, apply=apply)

    mode = "apply" if apply else "dry-run"
    print(f"Bucket sweep mode={mode} now={now_ms} expired={expired}")
    if apply:
        print(f"Deleted {expired} bucket(s).")
    elif expired:
        print(f"Would delete {expired} bucket(s). Re-run with --apply to delete.")
    else:
        print("No expired buckets.")


def cmd_stats() -> None:
    s = _limiter().stats()
    print(json.dumps({"bucket_count": s.bucket_count, "total_requests": s.total_requests}))


def cmd_reset(key: str) -> None:
    _limiter().reset(key)
    print(f"Reset bucket {key!r}.")


def cmd_clear(*, yes: bool) -> None:
    if not yes:
        raise SystemExit("Refusing to clear every bucket without --yes")
    _limiter().clear_all()
    print("Cleared all buckets.")


def cmd_check(endpoint: str, client_id: str) -> None:
    try:
        result = check_rate_limit(_limiter(), client_id, endpoint)  # type: ignore[arg-type]
    except UnknownEndpoint:
        raise SystemExit(f"Unknown endpoint: {endpoint}") from None
    print(json.dumps({"endpoint": endpoint, "client_id": client_id, **result.to_dict()}))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="ratekeeper")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db", help="Create the rate_limit_buckets table (idempotent).")

    p_sweep = sub.add_parser("sweep", help="Count expired buckets and optionally delete them.")
    p_sweep.add_argument("--apply", action="store_true", help="Actually delete expired buckets (default: dry-run).")
    p_sweep.add_argument("--now", type=int, default=None, help="Override 'now' as epoch milliseconds (testing).")

    sub.add_parser("stats", help="Print bucket count and total counted requests as JSON.")

    p_reset = sub.add_parser("reset", help="Delete one bucket, e.g. 'login:1.2.3.4'.")
    p_reset.add_argument("key", type=str)

    p_clear = sub.add_parser("clear", help="Delete every bucket.")
    p_clear.add_argument("--yes", action="store_true", help="Confirm clearing all buckets.")

    p_check = sub.add_parser("check", help="Show a client's status for an endpoint without consuming.")
    p_check.add_argument("endpoint", type=str)
    p_check.add_argument("client_id", type=str)

    args = parser.parse_args(argv)
    if args.cmd == "init-db":
        cmd_init_db()
    elif args.cmd == "sweep":
        cmd_sweep(apply=bool(args.apply), now=args.now)
    elif args.cmd == "stats":
        cmd_stats()
    elif args.cmd == "reset":
        cmd_reset(str(args.key))
    elif args.cmd == "clear":
        cmd_clear(yes=bool(args.yes))
    elif args.cmd == "check":
        cmd_check(str(args.endpoint), str(args.client_id))


if __name__ == "__main__":
    main()
