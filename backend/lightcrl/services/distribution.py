"""Publishing CRLs to distribution points.

Each pass fans out over a small thread pool, one task per enabled point.
Worker threads only talk to the network; every database write (point
counters, delivery attempts) happens afterwards on the caller's thread
through :meth:`DistributionEngine._record_outcome`.
"""

import logging
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

import httpx
from sqlalchemy.orm import Session

from lightcrl.errors import DistributionError, NotFoundError
from lightcrl.models.crl import CRL, CRLStatus
from lightcrl.models.distribution import CRLDeliveryAttempt, CRLDistributionPoint
from lightcrl.schemas.crl import DistributionResult, PointResult, ProbeResult, RetryResult
from lightcrl.services.collaborators import EngineContext, PublishResponse

log = logging.getLogger(__name__)

CRL_MEDIA_TYPE = "application/pkix-crl"

# extra wait on top of the transport timeout before a point is given up on
_TIMEOUT_GRACE_SECONDS = 1.0


class HttpPublisher:
    """Uploads CRLs with HTTP PUT."""

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        self.transport = transport

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(timeout=timeout, transport=self.transport, follow_redirects=True)

    def publish(self, url: str, data: bytes, timeout: float) -> PublishResponse:
        with self._client(timeout) as client:
            response = client.put(url, content=data, headers={"Content-Type": CRL_MEDIA_TYPE})
        return _to_publish_response(response)

    def probe(self, url: str, timeout: float) -> PublishResponse:
        with self._client(timeout) as client:
            response = client.head(url)
        return _to_publish_response(response)


def _to_publish_response(response: httpx.Response) -> PublishResponse:
    if response.is_success:
        return PublishResponse(status_code=response.status_code)
    return PublishResponse(
        status_code=response.status_code,
        error=f"HTTP {response.status_code} {response.reason_phrase}".strip(),
    )


class DistributionEngine:
    def __init__(self, db: Session, ctx: EngineContext):
        self.db = db
        self.ctx = ctx

    def enabled_points(self, ca_id: int) -> List[CRLDistributionPoint]:
        return (
            self.db.query(CRLDistributionPoint)
            .filter(CRLDistributionPoint.ca_id == ca_id, CRLDistributionPoint.enabled == True)
            .order_by(CRLDistributionPoint.priority, CRLDistributionPoint.id)
            .all()
        )

    # ------------------------------------------------------------------
    # network side (worker threads)
    # ------------------------------------------------------------------

    def _call(self, point: CRLDistributionPoint, action: Callable[[str], PublishResponse]) -> PointResult:
        started = time.monotonic()
        try:
            response = action(point.url)
        except httpx.TimeoutException:
            error, status_code = f"Timed out after {self.ctx.publish_timeout:g}s", None
        except httpx.HTTPError as exc:
            error, status_code = f"{type(exc).__name__}: {exc}", None
        except Exception as exc:
            error, status_code = f"{type(exc).__name__}: {exc}", None
        else:
            error, status_code = response.error, response.status_code
            if not response.ok and error is None:
                error = f"HTTP {response.status_code}"
        return PointResult(
            point_id=point.id,
            url=point.url,
            success=error is None,
            status_code=status_code,
            response_time_ms=round((time.monotonic() - started) * 1000, 2),
            error=error,
        )

    def _fan_out(
        self, points: Sequence[CRLDistributionPoint], action: Callable[[str], PublishResponse]
    ) -> List[PointResult]:
        if not points:
            return []

        pool = ThreadPoolExecutor(
            max_workers=min(self.ctx.publish_max_workers, len(points)),
            thread_name_prefix="crl-publish",
        )
        try:
            futures = [(point, pool.submit(self._call, point, action)) for point in points]
            results = []
            for point, future in futures:
                try:
                    results.append(future.result(timeout=self.ctx.publish_timeout + _TIMEOUT_GRACE_SECONDS))
                except FuturesTimeout:
                    results.append(
                        PointResult(
                            point_id=point.id,
                            url=point.url,
                            success=False,
                            response_time_ms=self.ctx.publish_timeout * 1000,
                            error=f"Timed out after {self.ctx.publish_timeout:g}s",
                        )
                    )
            return results
        finally:
            # a hung publisher must not hold up the pass
            pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # bookkeeping (caller thread)
    # ------------------------------------------------------------------

    def _record_outcome(
        self, crl: CRL, point: CRLDistributionPoint, result: PointResult, attempt: int, now: datetime
    ) -> None:
        """The only place that mutates distribution point counters."""
        if result.success:
            point.success_count = (point.success_count or 0) + 1
            point.last_success_at = now
            previous = point.average_response_time_ms
            point.average_response_time_ms = (
                result.response_time_ms
                if previous is None
                else round(previous + (result.response_time_ms - previous) / point.success_count, 2)
            )
        else:
            point.failure_count = (point.failure_count or 0) + 1
            point.last_failure_at = now
            point.last_error = result.error
            log.warning(
                "CRL %s publish to point %s (%s) failed on attempt %d: %s",
                crl.id,
                point.id,
                point.url,
                attempt,
                result.error,
            )

        # the newest outcome is the only one a point keeps queued
        self.db.query(CRLDeliveryAttempt).filter(
            CRLDeliveryAttempt.crl_id == crl.id,
            CRLDeliveryAttempt.point_id == point.id,
            CRLDeliveryAttempt.pending_retry == True,
        ).update({CRLDeliveryAttempt.pending_retry: False}, synchronize_session="fetch")
        self.db.add(
            CRLDeliveryAttempt(
                crl_id=crl.id,
                point_id=point.id,
                attempt=attempt,
                success=result.success,
                status_code=result.status_code,
                response_time_ms=result.response_time_ms,
                error=result.error,
                pending_retry=not result.success,
                created_at=now,
            )
        )

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def distribute(
        self,
        crl: CRL,
        points: Optional[Sequence[CRLDistributionPoint]] = None,
        attempt_numbers: Optional[Dict[int, int]] = None,
    ) -> DistributionResult:
        """Publish ``crl`` to every enabled point, in priority order.

        Overall success requires every point to succeed; failed points are
        queued for :meth:`retry_failed_deliveries`, never retried here.
        """
        if not crl.is_signed or not crl.signature:
            raise DistributionError(f"CRL {crl.id} is unsigned and cannot be distributed")
        if crl.status != CRLStatus.ACTIVE:
            raise DistributionError(
                f"CRL {crl.id} is {crl.status.value}; only the active CRL can be distributed"
            )

        if points is None:
            points = self.enabled_points(crl.ca_id)
        points = sorted((p for p in points if p.enabled), key=lambda p: (p.priority, p.id))
        attempt_numbers = attempt_numbers or {}

        der = crl.crl_der
        results = self._fan_out(points, lambda url: self.ctx.publisher.publish(url, der, self.ctx.publish_timeout))

        now = self.ctx.clock()
        by_id = {p.id: p for p in points}
        for result in results:
            self._record_outcome(crl, by_id[result.point_id], result, attempt_numbers.get(result.point_id, 1), now)
        self.db.commit()

        outcome = DistributionResult(
            crl_id=crl.id,
            success=all(r.success for r in results),
            per_point_results=results,
        )
        log.info(
            "CRL %s (CA %s) distributed: %d/%d points succeeded",
            crl.id,
            crl.ca_id,
            len(results) - len(outcome.failed_points),
            len(results),
        )
        if outcome.failed_points:
            self._notify_failures(crl, outcome)
        return outcome

    def _notify_failures(self, crl: CRL, outcome: DistributionResult) -> None:
        try:
            notify = self.ctx.config_factory(self.db).get_config(crl.ca_id).notifications
        except NotFoundError:
            return
        if notify.notify_on_distribution_failure:
            self.ctx.notify(
                "crl.distribution_failed",
                {
                    "ca_id": crl.ca_id,
                    "crl_id": crl.id,
                    "crl_number": crl.crl_number,
                    "failed_points": outcome.failed_points,
                },
            )

    def retry_failed_deliveries(self, ca_id: Optional[int] = None, max_retries: int = 5) -> RetryResult:
        """Re-attempt queued failed deliveries of still-active CRLs.

        A delivery is retried while it has been retried fewer than
        ``max_retries`` times; after that it leaves the queue.
        """
        query = (
            self.db.query(CRLDeliveryAttempt)
            .join(CRL, CRL.id == CRLDeliveryAttempt.crl_id)
            .filter(CRLDeliveryAttempt.pending_retry == True)
        )
        if ca_id:
            query = query.filter(CRL.ca_id == ca_id)

        result = RetryResult()
        queued: Dict[int, List[CRLDeliveryAttempt]] = defaultdict(list)
        for attempt in query.order_by(CRLDeliveryAttempt.id).all():
            attempt.pending_retry = False
            point = attempt.point
            if attempt.crl.status != CRLStatus.ACTIVE or not point.enabled:
                result.abandoned += 1
            elif attempt.attempt > max_retries:
                result.abandoned += 1
                log.error(
                    "Giving up on CRL %s delivery to point %s after %d attempts",
                    attempt.crl_id,
                    point.id,
                    attempt.attempt,
                )
            else:
                queued[attempt.crl_id].append(attempt)
        self.db.commit()

        for attempts in queued.values():
            crl = attempts[0].crl
            outcome = self.distribute(
                crl,
                points=[a.point for a in attempts],
                attempt_numbers={a.point_id: a.attempt + 1 for a in attempts},
            )
            result.retried += len(outcome.per_point_results)
            result.failed += len(outcome.failed_points)
            result.successful += len(outcome.per_point_results) - len(outcome.failed_points)

        if result.retried or result.abandoned:
            log.info(
                "Delivery retry: %d retried, %d succeeded, %d failed, %d dropped",
                result.retried,
                result.successful,
                result.failed,
                result.abandoned,
            )
        return result

    def test_distribution_points(self, ca_id: int) -> ProbeResult:
        """Connectivity check; publishes nothing and leaves counters alone."""
        points = self.enabled_points(ca_id)
        results = self._fan_out(points, lambda url: self.ctx.publisher.probe(url, self.ctx.publish_timeout))
        successful = sum(1 for r in results if r.success)
        return ProbeResult(
            total=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )
