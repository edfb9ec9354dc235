from datetime import timedelta

import pytest

from lightcrl.models import CRL, CRLConfiguration, CRLStatus
from lightcrl.schemas.crl import CRLGenerationRequest
from lightcrl.services.collaborators import DatabaseRevocationSource, KeyStoreSigner
from lightcrl.services.crl_service import generate_crl
from lightcrl.services.scheduler import CRLScheduler

from conftest import T0


def _crls(session, ca_id):
    session.expire_all()
    return session.query(CRL).filter(CRL.ca_id == ca_id).order_by(CRL.crl_number).all()


@pytest.fixture
def scheduler(session_factory, ctx):
    sched = CRLScheduler(session_factory, ctx, interval_minutes=5, max_workers=1, max_retries=2)
    yield sched
    sched.stop(wait=False)


class TestTick:
    """Scheduled ticks"""

    def test_regenerates_inside_overlap_window(self, session, scheduler, clock, make_ca):
        ca = make_ca(session)

        first = scheduler.run_once()
        assert first.generated == [ca.id]
        assert [c.crl_number for c in _crls(session, ca.id)] == [1]

        clock.set(T0 + timedelta(hours=165, minutes=59))
        early = scheduler.run_once()
        assert early.generated == []
        assert early.results[ca.id].success is True
        assert [c.crl_number for c in _crls(session, ca.id)] == [1]

        clock.set(T0 + timedelta(hours=166, minutes=1))
        due = scheduler.run_once()
        assert due.generated == [ca.id]

        crls = _crls(session, ca.id)
        assert [c.crl_number for c in crls] == [1, 2]
        assert crls[0].status == CRLStatus.SUPERSEDED
        assert crls[1].status == CRLStatus.ACTIVE
        assert crls[1].trigger_reason == "scheduled"
        assert crls[1].generated_by == "scheduler"

    def test_one_failing_ca_does_not_stop_the_others(self, session, session_factory, ctx, make_ca):
        healthy = make_ca(session, cn="Healthy CA")
        broken = make_ca(session, cn="Broken CA")
        broken_id = broken.id

        class PartialSigner(KeyStoreSigner):
            def sign(self, payload, ca_id):
                if ca_id == broken_id:
                    raise RuntimeError("HSM offline")
                return super().sign(payload, ca_id)

        ctx.signer_factory = PartialSigner
        report = CRLScheduler(session_factory, ctx, max_workers=1).run_once()

        assert report.generated == [healthy.id]
        assert report.failed_cas == [broken_id]
        assert report.results[broken_id].error_code == "SIGNING_ERROR"
        assert len(_crls(session, healthy.id)) == 1
        assert _crls(session, broken_id) == []

    def test_unexpected_exception_is_isolated(self, session, session_factory, ctx, clock, make_ca):
        first = make_ca(session, cn="CA One")
        second = make_ca(session, cn="CA Two")
        first_id = first.id

        class BrokenInventory(DatabaseRevocationSource):
            def get_revoked_certificates(self, ca_id, include_expired):
                if ca_id == first_id:
                    raise RuntimeError("inventory unavailable")
                return super().get_revoked_certificates(ca_id, include_expired)

        ctx.revocation_factory = lambda db: BrokenInventory(db, clock)
        report = CRLScheduler(session_factory, ctx, max_workers=1).run_once()

        assert report.failed_cas == [first_id]
        assert first_id not in report.results
        assert report.generated == [second.id]

    def test_auto_generate_off_is_skipped(self, session, scheduler, make_ca):
        manual = make_ca(session, cn="Manual CA")
        automatic = make_ca(session, cn="Auto CA")
        session.add(CRLConfiguration(ca_id=manual.id, auto_generate=False))
        session.commit()

        report = scheduler.run_once()

        assert list(report.results) == [automatic.id]
        assert _crls(session, manual.id) == []

    def test_disabled_ca_is_skipped(self, session, scheduler, make_ca):
        ca = make_ca(session)
        session.add(CRLConfiguration(ca_id=ca.id, enabled=False))
        session.commit()

        report = scheduler.run_once()

        assert report.results == {}
        assert report.failed_cas == []

    def test_expiry_sweep(self, session, scheduler, clock, make_ca):
        ca = make_ca(session)
        session.add(CRLConfiguration(ca_id=ca.id, auto_generate=False))
        session.commit()
        generate_crl(session, CRLGenerationRequest(ca_id=ca.id), scheduler.ctx)
        clock.advance(hours=200)

        report = scheduler.run_once()

        assert report.expired == 1
        assert _crls(session, ca.id)[0].status == CRLStatus.EXPIRED

    def test_retries_failed_deliveries(self, session, scheduler, publish_log, make_ca, make_point):
        ca = make_ca(session)
        make_point(session, ca, "https://flaky.example.test/ca.crl")
        publish_log.failing_hosts.add("flaky.example.test")
        scheduler.run_once()

        publish_log.failing_hosts.clear()
        report = scheduler.run_once()

        assert report.retried == 1
        assert [r.url.host for r in publish_log.puts()] == ["flaky.example.test"] * 2


class TestLifecycle:
    def test_start_and_stop(self, scheduler):
        assert scheduler.running is False

        scheduler.start(run_immediately=False)
        assert scheduler.running is True
        scheduler.start(run_immediately=False)
        assert scheduler.running is True

        scheduler.stop()
        assert scheduler.running is False
