"""Background CRL lifecycle loop.

:class:`CRLScheduler` owns the APScheduler job for the life of the process.
Each tick expires stale CRLs, retries queued deliveries and then asks every
auto-generating CA for a scheduled CRL. CAs are evaluated on a small thread
pool, each with its own session; one CA failing never stops the others.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from lightcrl.config import settings
from lightcrl.schemas.crl import CRLGenerationRequest, GenerationResult
from lightcrl.services.collaborators import EngineContext
from lightcrl.services.crl_service import generate_crl
from lightcrl.services.crl_store import expire_stale_crls
from lightcrl.services.distribution import DistributionEngine

log = logging.getLogger(__name__)

JOB_ID = "crl-lifecycle"


@dataclass
class TickReport:
    expired: int = 0
    retried: int = 0
    results: Dict[int, GenerationResult] = field(default_factory=dict)
    failed_cas: List[int] = field(default_factory=list)

    @property
    def generated(self) -> List[int]:
        return [ca_id for ca_id, r in self.results.items() if r.generated]


class CRLScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        ctx: EngineContext,
        interval_minutes: Optional[int] = None,
        max_workers: Optional[int] = None,
        max_retries: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.ctx = ctx
        self.interval_minutes = interval_minutes or settings.CRL_SCHEDULER_INTERVAL_MINUTES
        self.max_workers = max_workers or settings.CRL_SCHEDULER_MAX_WORKERS
        self.max_retries = max_retries or settings.CRL_MAX_RETRIES
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self, run_immediately: bool = True) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self.run_once,
            trigger="interval",
            minutes=self.interval_minutes,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc) if run_immediately else None,
        )
        scheduler.start()
        self._scheduler = scheduler
        log.info("CRL scheduler started, interval %d minutes", self.interval_minutes)

    def stop(self, wait: bool = True) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        log.info("CRL scheduler stopped")

    # ------------------------------------------------------------------

    def _housekeeping(self, report: TickReport) -> None:
        db = self.session_factory()
        try:
            report.expired = expire_stale_crls(db, self.ctx.clock())
            report.retried = DistributionEngine(db, self.ctx).retry_failed_deliveries(
                max_retries=self.max_retries
            ).retried
        except Exception:
            db.rollback()
            log.exception("CRL housekeeping failed")
        finally:
            db.close()

    def _due_ca_ids(self) -> List[int]:
        db = self.session_factory()
        try:
            provider = self.ctx.config_factory(db)
            ca_ids = []
            for ca_id in provider.list_ca_ids():
                config = provider.get_config(ca_id)
                if config.enabled and config.auto_generate:
                    ca_ids.append(ca_id)
            return ca_ids
        finally:
            db.close()

    def _run_for_ca(self, ca_id: int) -> GenerationResult:
        db = self.session_factory()
        try:
            return generate_crl(
                db,
                CRLGenerationRequest(ca_id=ca_id, reason="scheduled", requested_by="scheduler"),
                self.ctx,
            )
        finally:
            db.close()

    def _evaluate(self, ca_id: int, report: TickReport) -> None:
        try:
            result = self._run_for_ca(ca_id)
        except Exception:
            log.exception("Scheduled CRL generation for CA %s failed", ca_id)
            report.failed_cas.append(ca_id)
            return
        report.results[ca_id] = result
        if not result.success:
            report.failed_cas.append(ca_id)

    def run_once(self) -> TickReport:
        """One scheduler tick."""
        report = TickReport()
        self._housekeeping(report)

        try:
            ca_ids = self._due_ca_ids()
        except Exception:
            log.exception("Unable to list CAs for scheduled CRL generation")
            return report

        if self.max_workers <= 1 or len(ca_ids) <= 1:
            for ca_id in ca_ids:
                self._evaluate(ca_id, report)
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="crl-tick") as pool:
                for ca_id in ca_ids:
                    pool.submit(self._evaluate, ca_id, report)

        log.info(
            "CRL tick: %d CAs checked, %d generated, %d failed, %d expired, %d deliveries retried",
            len(ca_ids),
            len(report.generated),
            len(report.failed_cas),
            report.expired,
            report.retried,
        )
        return report
