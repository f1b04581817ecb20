#!/usr/bin/env python3
"""
Campaign Dispatch Engine
========================

Usage:
    python main.py run                                  # poll until SIGTERM/SIGINT
    python main.py poll-once                            # a single poll pass
    python main.py send-now <campaign_id> <website_id>  # interactive send, prints JSON
    python main.py sweep                                # revert abandoned claims
    python main.py verify-token <token>                 # check an unsubscribe token
"""

import argparse
import asyncio
import json
import logging
import signal
import sys

import config
from database import Store, ensure_indexes, get_db
from dispatch import unsubscribe
from dispatch.background import BackgroundTasks
from dispatch.scheduler import CampaignPoller
from dispatch.transport import SmtpTransport
from utils.logging_utils import setup_logging

logger = logging.getLogger("campaigns.main")


def preflight() -> Store:
    """Check the database is reachable and indexes exist; exit on failure."""
    if not config.DATABASE_URL:
        print("❌ DATABASE_URL not set.")
        sys.exit(1)

    try:
        db = get_db()
        db.command("ping")
        print("✅ MongoDB connected")
        ensure_indexes(db)
    except Exception as e:
        print(f"❌ Pre-flight check failed: {e}")
        sys.exit(1)

    if not config.SMTP_HOST:
        print("⚠️  SMTP_HOST not set, sends will fail")
    if config.UNSUBSCRIBE_SECRET == "dev-unsubscribe-secret":
        print("⚠️  UNSUBSCRIBE_SECRET is the development default")
    if not config.ALERT_WEBHOOK_URL:
        print("⚠️  ALERT_WEBHOOK_URL not set (alerts will be disabled)")

    return Store(db)


def build_poller(store: Store) -> CampaignPoller:
    return CampaignPoller(store, SmtpTransport(), background=BackgroundTasks())


async def run_poller(store: Store):
    poller = build_poller(store)
    shutdown = asyncio.Event()

    def _handle_signal(sig):
        logger.info(f"Received signal {sig.name}, initiating graceful shutdown")
        shutdown.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle_signal, sig)

    logger.info("=" * 60)
    logger.info("Campaign Dispatch Engine — Starting")
    logger.info(f"Poll interval: {poller.interval}s")
    logger.info(f"Claim lease: {config.CLAIM_LEASE_MINUTES} min (renewed every {config.LEASE_RENEW_EVERY} recipients)")
    logger.info(f"SMTP: {config.SMTP_HOST}:{config.SMTP_PORT}")
    logger.info("=" * 60)

    poller.start()
    await shutdown.wait()

    logger.info("── Graceful Shutdown ──")
    await poller.stop()
    await poller.background.close()
    logger.info("Shutdown complete")


async def poll_once(store: Store) -> dict:
    poller = build_poller(store)
    try:
        return await poller.run_once()
    finally:
        await poller.background.close()


async def send_now(store: Store, campaign_id: str, website_id: str) -> dict:
    poller = build_poller(store)
    try:
        return await poller.send_now(campaign_id, website_id)
    finally:
        await poller.background.close()


def sweep(store: Store) -> int:
    poller = build_poller(store)
    return poller.pipeline.claims.sweep_stale()


def verify_token(token: str) -> dict:
    result = unsubscribe.verify(token)
    return {"valid": result.valid, "error": result.error, "payload": result.payload}


def main():
    parser = argparse.ArgumentParser(
        description="Scheduled newsletter campaign dispatch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py run
  python main.py poll-once
  python main.py send-now 65f1c0ffee0000000000abcd 65f1c0ffee0000000000dcba
  python main.py verify-token <token>
        """
    )
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="DEBUG, INFO, WARNING, ERROR")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Poll for due campaigns until stopped")
    subparsers.add_parser("poll-once", help="Run a single poll pass and exit")

    send_parser = subparsers.add_parser("send-now", help="Send a campaign immediately")
    send_parser.add_argument("campaign_id", help="Campaign ID")
    send_parser.add_argument("website_id", help="Owning website ID")

    subparsers.add_parser("sweep", help="Revert campaigns stuck in 'sending' with an expired lease")

    verify_parser = subparsers.add_parser("verify-token", help="Verify an unsubscribe token")
    verify_parser.add_argument("token", help="Token from an unsubscribe link")

    args = parser.parse_args()
    setup_logging(args.log_level, config.LOG_FILE or None)

    if args.command == "verify-token":
        print(json.dumps(verify_token(args.token), indent=2, default=str))
        return

    if args.command not in ("run", "poll-once", "send-now", "sweep"):
        parser.print_help()
        return

    store = preflight()

    if args.command == "run":
        asyncio.run(run_poller(store))
    elif args.command == "poll-once":
        print(json.dumps(asyncio.run(poll_once(store)), indent=2))
    elif args.command == "send-now":
        result = asyncio.run(send_now(store, args.campaign_id, args.website_id))
        print(json.dumps(result, indent=2, default=str))
        if not result.get("success"):
            sys.exit(1)
    elif args.command == "sweep":
        print(f"Reverted {sweep(store)} stale claim(s)")


if __name__ == "__main__":
    main()
