"""
arise.__main__: Ledger maintenance entry point (``python -m arise``)
=====================================================================

Wiring:
1. Load .env (``DATABASE_URL``).
2. Load config.yaml if present (tuning), else built-in defaults.
3. Create the SQLAlchemy engine and ensure tables + templates exist.
4. Verify one user's hash chain, or every user's.

Exits with status 1 when any chain is corrupted.

Run with::

    python -m arise                      # verify all users
    python -m arise --user u-123         # verify one user
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from arise.config import get_default_config, load_config
from arise.database.engine import create_db_engine, init_db
from arise.exceptions import LedgerCorrupted, ProgressionError
from arise.services.ledger_service import verify_all_chains, verify_user_chain

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("arise")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="arise", description="Verify XP ledger chains.")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    parser.add_argument("--user", default=None, help="Verify only this user id")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run chain verification; return the process exit status."""
    args = _parse_args(argv)

    # 1. Environment variables.
    load_dotenv()

    # 2. Tuning configuration.
    if Path(args.config).exists():
        cfg = load_config(args.config)
        logger.info("Loaded configuration from %s", args.config)
    else:
        cfg = get_default_config()
        logger.info("No %s found; using built-in defaults", args.config)

    # 3. Database.
    try:
        engine = create_db_engine()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        return 1
    init_db(engine)

    # 4. Verification.
    try:
        if args.user:
            report = verify_user_chain(engine, args.user, config=cfg)
            logger.info(
                "User %s: %d events verified, %d XP, level %d",
                report.user_id, report.events_checked, report.total_xp, report.level,
            )
            return 0
        summary = verify_all_chains(engine, config=cfg)
    except LedgerCorrupted:
        return 1
    except ProgressionError as exc:
        logger.error("Verification aborted: %s", exc)
        return 1
    finally:
        engine.dispose()

    for item in summary["corrupted"]:
        logger.error(
            "Corrupted: user=%s event=%s reason=%s",
            item["user_id"], item["event_id"], item["reason"],
        )
    return 1 if summary["corrupted"] else 0


if __name__ == "__main__":
    sys.exit(main())
