#!/usr/bin/env python3
"""Run one expired-session sweep and report the result.

Usage:
    REDIS_URL=redis://localhost:6379/0 python scripts/cleanup_sessions.py

    # Treat sessions idle for more than a day as expired:
    python scripts/cleanup_sessions.py --max-idle-seconds 86400

Environment Variables:
    REDIS_URL: Redis connection string (without it only this process's memory is swept)
    SESSION_PREFIX: Key prefix for session records (default "session:")
    SESSION_EXPIRY_SECONDS: Session lifetime used when --max-idle-seconds is omitted
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def cleanup_sessions(max_idle_seconds: Optional[int] = None) -> dict:
    """Sweep once.

    Returns:
        dict with sessions_deleted, errors and the backend that was swept
    """
    from otpgate.config import Settings
    from otpgate.service.sessions import SessionService
    from otpgate.storage.kv import KeyValueStore

    settings = Settings.from_env()
    kv = KeyValueStore(
        settings.redis_url,
        init_timeout=settings.redis_init_timeout_seconds,
        socket_timeout=settings.redis_socket_timeout,
        reconnect_interval=settings.redis_reconnect_interval_seconds,
    )
    sessions = SessionService(
        kv,
        expiry_seconds=max_idle_seconds or settings.session_expiry_seconds,
        prefix=settings.session_prefix,
    )
    try:
        result = await sessions.cleanup_expired()
        backend = kv.state.value
    finally:
        await kv.close()
    return {
        "sessions_deleted": result.sessions_deleted,
        "errors": result.errors,
        "backend": backend,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Delete idle login sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--max-idle-seconds",
        type=int,
        default=None,
        help="Idle time after which a session is deleted (default: SESSION_EXPIRY_SECONDS)",
    )
    args = parser.parse_args()

    if args.max_idle_seconds is not None and args.max_idle_seconds <= 0:
        print("Error: --max-idle-seconds must be positive")
        sys.exit(1)

    try:
        result = asyncio.run(cleanup_sessions(args.max_idle_seconds))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Backend: {result['backend']}")
    print(f"Sessions deleted: {result['sessions_deleted']}")
    for error in result["errors"]:
        print(f"  {error}")
    if result["errors"]:
        sys.exit(2)


if __name__ == "__main__":
    main()
