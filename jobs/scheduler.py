"""Background job scheduler for yield accrual, expiry, rebalancing, harvest and reconciliation"""

import logging
from typing import Any, Dict

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.container import ServiceContainer
from utils.exception_handler import PaymentSystemError

logger = logging.getLogger(__name__)


class PaymentScheduler:
    """
    Periodic jobs, decoupled from request handling.

    Each job only takes a payment's id lock for the single transition it
    performs, so request traffic is never blocked for a whole batch.
    """

    def __init__(self, container: ServiceContainer):
        self.container = container
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed runs into one
            'max_instances': 1,
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register all interval jobs (idempotent across hot reloads)"""
        jobs = [
            (self.accrue_yield, Config.YIELD_ACCRUAL_INTERVAL, "accrue_yield", "Accrue Payment Yield"),
            (self.expire_overdue_payments, Config.EXPIRY_CHECK_INTERVAL, "expire_payments", "Expire Overdue Payments"),
            (self.check_rebalance, Config.REBALANCE_CHECK_INTERVAL, "check_rebalance", "Check Allocation Drift"),
            (self.harvest_strategies, Config.HARVEST_INTERVAL, "harvest", "Harvest Strategies"),
            (
                self.monitor_reconciliation,
                Config.RECONCILIATION_MONITOR_INTERVAL,
                "reconciliation_monitor",
                "Monitor Open Reconciliation Cases",
            ),
        ]
        for func, seconds, job_id, name in jobs:
            self.scheduler.add_job(
                func,
                trigger=IntervalTrigger(seconds=seconds),
                id=job_id,
                name=name,
                replace_existing=True,
            )
        logger.info(f"Scheduled {len(jobs)} background jobs")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("Payment scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Payment scheduler stopped")

    async def accrue_yield(self) -> Dict[str, int]:
        """Refresh estimated yield for every confirmed yield-bearing payment, in batches"""
        payments = self.container.payments
        batch_size = max(1, Config.YIELD_BATCH_SIZE)
        last_id = 0
        updated = failed = 0
        while True:
            # Keyset paging: payments leaving CONFIRMED mid-scan do not shift later pages
            batch = payments.yield_bearing_ids(batch_size, last_id)
            if not batch:
                break
            for row_id, payment_id in batch:
                last_id = row_id
                try:
                    await payments.accrue_yield(payment_id)
                    updated += 1
                except PaymentSystemError as e:
                    # Payment may have been released or cancelled since the batch was read
                    failed += 1
                    logger.warning(f"Yield accrual skipped for {payment_id}: {e.message}")

        if updated or failed:
            logger.info(f"Yield accrual: {updated} updated, {failed} skipped")
        return {"updated": updated, "skipped": failed}

    async def expire_overdue_payments(self) -> Dict[str, int]:
        payments = self.container.payments
        expired = 0
        for payment_id in payments.overdue_pending_ids():
            try:
                await payments.expire(payment_id)
                expired += 1
            except PaymentSystemError as e:
                logger.warning(f"Could not expire {payment_id}: {e.message}")
        if expired:
            logger.info(f"Expired {expired} overdue payments")
        return {"expired": expired}

    async def check_rebalance(self) -> Dict[str, Any]:
        try:
            return await self.container.allocation_engine.auto_rebalance()
        except PaymentSystemError as e:
            logger.error(f"Automatic rebalance failed: {e.message}")
            return {"rebalanced": False, "error": e.message}

    async def harvest_strategies(self) -> Dict[str, Any]:
        report = await self.container.allocation_engine.harvest_all()
        return report.to_dict()

    async def monitor_reconciliation(self) -> Dict[str, Any]:
        summary = self.container.reconciliation.summarize()
        if summary.open_cases:
            logger.critical(
                f"{summary.open_cases} reconciliation cases open (oldest {summary.oldest_open_case_id}): "
                f"{summary.by_operation}"
            )
        return {"open_cases": summary.open_cases, "by_operation": summary.by_operation}
