"""Delete expired binding challenges, OAuth states, reset tokens and session revocations.

Run from the repository root: ``python -m scripts.purge_auth_state``.
"""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from typing import Optional, Sequence

from core.logging import get_logger
from services.auth.maintenance import purge_expired_auth_state

logger = get_logger(__name__)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--before",
        help="ISO-8601 cut-off (default: now). Rows expiring before it are removed.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    cutoff = None
    if args.before:
        cutoff = datetime.fromisoformat(args.before)
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
    logger.info("Purging auth state expiring before %s.", cutoff.isoformat() if cutoff else "now")
    stats = purge_expired_auth_state(now=cutoff)
    print(json.dumps(stats, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
