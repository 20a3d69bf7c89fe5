"""
raidledger.api.auth — Service token minting
============================================

Mint a token for a caller::

    python -m raidledger.api.auth bot
    python -m raidledger.api.auth auto-end-poller --system
"""

from __future__ import annotations

import argparse
from datetime import UTC, datetime, timedelta

import jwt
from dotenv import load_dotenv

DEFAULT_TTL = timedelta(days=365)


def issue_token(
    subject: str,
    *,
    is_system: bool = False,
    ttl: timedelta = DEFAULT_TTL,
    secret: str | None = None,
) -> str:
    """Return a signed HS256 service token for *subject*."""
    from raidledger.api.deps import JWT_ALGORITHM, JWT_SECRET

    now = datetime.now(UTC)
    payload = {
        "sub": subject,
        "is_system": is_system,
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, secret or JWT_SECRET, algorithm=JWT_ALGORITHM)


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Mint a RaidLedger service token.")
    parser.add_argument("subject", help="Name of the calling service")
    parser.add_argument(
        "--system", action="store_true", help="Allow the system auto-end path"
    )
    parser.add_argument("--days", type=int, default=DEFAULT_TTL.days)
    args = parser.parse_args(argv)
    print(issue_token(args.subject, is_system=args.system, ttl=timedelta(days=args.days)))


if __name__ == "__main__":
    main()
