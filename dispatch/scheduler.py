"""
Campaign Poller — finds due scheduled campaigns and sends them.

    poller = CampaignPoller(Store(), SmtpTransport())
    poller.start()        # immediate pass, then one every POLL_INTERVAL_SECONDS
    ...
    await poller.stop()

Each pass first reverts abandoned claims (expired leases), then runs every
due campaign through the pipeline one after another. One campaign failing
never stops the pass; polled failures are reported through logs and
webhook alerts only.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

import config
from database import utcnow
from dispatch import alerts
from dispatch.background import BackgroundTasks
from dispatch.claims import SendMode
from dispatch.errors import AlreadySending, AlreadySent, CampaignError, VALIDATION_ERRORS
from dispatch.pipeline import CampaignPipeline

logger = logging.getLogger("campaigns.scheduler")


class CampaignPoller:
    def __init__(self, store, transport, clock: Callable[[], datetime] = utcnow,
                 interval: float = None, pipeline: Optional[CampaignPipeline] = None,
                 background: Optional[BackgroundTasks] = None, shutdown_grace: float = 15):
        self.store = store
        self.clock = clock
        self.interval = config.POLL_INTERVAL_SECONDS if interval is None else interval
        self.pipeline = pipeline or CampaignPipeline(store, transport, clock=clock, background=background)
        self.background = self.pipeline.background
        self.shutdown_grace = shutdown_grace

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._cycle_lock = asyncio.Lock()
        # campaign_id → reason already alerted, so a stuck campaign alerts once
        self._rejections: Dict[str, str] = {}

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start polling. Returns False if already running."""
        if self.is_running:
            logger.debug("Poller already running, start ignored")
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="campaign_poller")
        logger.info(f"Campaign poller started (every {self.interval}s)")
        return True

    async def stop(self):
        """Stop polling; waits for an in-flight pass, then cancels it."""
        if self._task is None:
            return
        task, self._task = self._task, None
        self._stop_event.set()

        if not task.done():
            done, pending = await asyncio.wait([task], timeout=self.shutdown_grace)
            for t in pending:
                t.cancel()
                try:
                    await t
                except asyncio.CancelledError:
                    pass
        logger.info("Campaign poller stopped")

    async def _loop(self):
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Poll cycle error: {e}", exc_info=True)

            # Sleep for the interval or until stop
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                continue

    async def run_once(self) -> Dict:
        """One poll pass. Overlapping calls wait for the running pass."""
        async with self._cycle_lock:
            return await self._poll()

    async def _poll(self) -> Dict:
        summary = {"due": 0, "sent": 0, "skipped": 0, "rejected": 0, "failed": 0, "swept": 0}

        try:
            summary["swept"] = self.pipeline.claims.sweep_stale()
        except Exception as e:
            logger.error(f"Stale claim sweep failed: {e}", exc_info=True)

        now = self.clock()
        due = self.store.campaigns.get_due(now)
        summary["due"] = len(due)
        if not due:
            logger.debug("No due campaigns")
            return summary

        logger.info(f"Found {len(due)} due campaign(s)")

        for campaign in due:
            if self._stop_event is not None and self._stop_event.is_set():
                logger.info("Stop requested, leaving remaining campaigns for the next run")
                break
            summary[await self._send_one(campaign)] += 1

        logger.info(
            f"Poll finished: {summary['sent']} sent, {summary['skipped']} skipped, "
            f"{summary['rejected']} rejected, {summary['failed']} failed"
        )
        return summary

    async def _send_one(self, campaign: Dict) -> str:
        campaign_id = str(campaign["_id"])
        title = campaign.get("title") or ""
        try:
            outcome = await self.pipeline.run(campaign, SendMode.POLLED)
        except (AlreadySending, AlreadySent) as e:
            logger.info(f"Campaign {campaign_id} skipped: {e.message}")
            return "skipped"
        except VALIDATION_ERRORS as e:
            self._report_rejection(campaign_id, title, e)
            return "rejected"
        except CampaignError as e:
            # claim lost mid-dispatch; the next pass picks it up again
            logger.error(f"Campaign {campaign_id} failed: {e.reason} ({e.message})")
            return "failed"
        except Exception as e:
            logger.error(f"Error sending campaign {campaign_id}: {e}", exc_info=True)
            self.background.submit(
                alerts.alert_campaign_failed, campaign_id, title, str(e),
                name="alert_campaign_failed",
            )
            return "failed"

        self._rejections.pop(campaign_id, None)
        logger.info(
            f"Campaign {campaign_id} sent: {outcome.sent_count} delivered, "
            f"{outcome.fail_count} failed, {outcome.skipped_count} skipped"
        )
        self.background.submit(
            alerts.alert_campaign_sent, campaign_id, title, outcome.sent_count, outcome.fail_count,
            name="alert_campaign_sent",
        )
        return "sent"

    def _report_rejection(self, campaign_id: str, title: str, error: CampaignError):
        logger.warning(
            f"Campaign {campaign_id} not sent: {error.reason} ({error.message})",
            extra={"campaign_id": campaign_id, "reason": error.reason, **error.details},
        )
        if self._rejections.get(campaign_id) == error.reason:
            return
        self._rejections[campaign_id] = error.reason
        self.background.submit(
            alerts.alert_campaign_rejected, campaign_id, title, error.reason, error.details,
            name="alert_campaign_rejected",
        )

    async def send_now(self, campaign_id, website_id) -> Dict:
        return await self.pipeline.send_now(campaign_id, website_id)
