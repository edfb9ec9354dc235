from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from asn1crypto import crl as asn1_crl

from lightcrl.errors import ConfigurationError, NotFoundError
from lightcrl.models import CRLConfiguration, RevocationReason
from lightcrl.schemas.crl import CRLGenerationRequest, RevokedEntry
from lightcrl.schemas.crl_settings import CRLConfig
from lightcrl.services import crypto_service
from lightcrl.services.crl_builder import (
    asn1_time,
    build_crl,
    check_config,
    encode_tbs,
    is_generation_due,
    next_crl_number,
)

from conftest import T0


class StaticRevocations:
    def __init__(self, entries):
        self.entries = entries

    def get_revoked_certificates(self, ca_id, include_expired):
        return list(self.entries)


class TestGenerationDue:
    """Due-time arithmetic"""

    def test_due_without_active_crl(self):
        assert is_generation_due(None, 2, T0) is True

    def test_not_due_before_overlap_window(self):
        active = SimpleNamespace(next_update=T0 + timedelta(hours=168))
        now = T0 + timedelta(hours=165, minutes=59)
        assert is_generation_due(active, 2, now) is False

    def test_due_inside_overlap_window(self):
        active = SimpleNamespace(next_update=T0 + timedelta(hours=168))
        now = T0 + timedelta(hours=166, minutes=1)
        assert is_generation_due(active, 2, now) is True

    def test_due_exactly_at_boundary(self):
        active = SimpleNamespace(next_update=T0 + timedelta(hours=168))
        assert is_generation_due(active, 2, T0 + timedelta(hours=166)) is True

    def test_force_overrides_schedule(self):
        active = SimpleNamespace(next_update=T0 + timedelta(hours=168))
        assert is_generation_due(active, 2, T0, force=True) is True


class TestCheckConfig:
    def test_disabled(self):
        with pytest.raises(ConfigurationError):
            check_config(CRLConfig(ca_id=1, enabled=False))

    def test_overlap_not_below_validity(self):
        with pytest.raises(ConfigurationError):
            check_config(CRLConfig(ca_id=1, validity_hours=2, overlap_hours=2))

    def test_valid(self):
        check_config(CRLConfig(ca_id=1, validity_hours=168, overlap_hours=2))


class TestBuildCRL:
    """Builder against the database-backed collaborators"""

    def test_first_crl_number_is_one(self, session, make_ca):
        ca = make_ca(session)
        assert next_crl_number(session, ca.id) == 1

    def test_build_lays_out_window_and_issuer(self, session, ctx, clock, make_ca):
        ca = make_ca(session, cn="Builder CA")
        clock.set(T0.replace(microsecond=123456))

        outcome = build_crl(session, CRLGenerationRequest(ca_id=ca.id), ctx, clock())

        assert outcome.due is True
        unsigned = outcome.crl
        assert unsigned.crl_number == 1
        assert unsigned.this_update == T0
        assert unsigned.next_update == T0 + timedelta(hours=168)
        assert "CN=Builder CA" in unsigned.issuer
        assert unsigned.entries == []

    def test_custom_validity_override(self, session, ctx, clock, make_ca):
        ca = make_ca(session)
        request = CRLGenerationRequest(ca_id=ca.id, custom_validity_hours=24)

        unsigned = build_crl(session, request, ctx, clock()).crl

        assert unsigned.next_update - unsigned.this_update == timedelta(hours=24)

    def test_revoked_leaves_collected(self, session, ctx, clock, make_ca, make_leaf):
        ca = make_ca(session)
        make_leaf(session, ca, 0x10, revoked_at=T0 - timedelta(days=1), reason="key_compromise")
        make_leaf(session, ca, 0x20)
        make_leaf(session, ca, 0x05, revoked_at=T0 - timedelta(days=2), reason="no_such_reason")

        unsigned = build_crl(session, CRLGenerationRequest(ca_id=ca.id), ctx, clock()).crl

        assert [e.serial_number for e in unsigned.entries] == [0x05, 0x10]
        assert unsigned.entries[0].reason == RevocationReason.UNSPECIFIED
        assert unsigned.entries[1].reason == RevocationReason.KEY_COMPROMISE

    def test_expired_certificates_need_opt_in(self, session, ctx, clock, make_ca, make_leaf):
        ca = make_ca(session)
        make_leaf(
            session,
            ca,
            0x30,
            revoked_at=T0 - timedelta(days=40),
            not_after=T0 - timedelta(days=1),
        )

        default = build_crl(session, CRLGenerationRequest(ca_id=ca.id), ctx, clock()).crl
        included = build_crl(
            session, CRLGenerationRequest(ca_id=ca.id, include_expired=True), ctx, clock()
        ).crl

        assert default.entries == []
        assert [e.serial_number for e in included.entries] == [0x30]

    def test_duplicate_serials_collapse_to_earliest(self, session, ctx, clock, make_ca):
        ca = make_ca(session)
        ctx.revocation_factory = lambda db: StaticRevocations(
            [
                RevokedEntry(serial_number=7, revocation_date=T0 - timedelta(hours=1)),
                RevokedEntry(serial_number=7, revocation_date=T0 - timedelta(hours=5)),
                RevokedEntry(serial_number=3, revocation_date=T0 - timedelta(hours=2)),
            ]
        )

        unsigned = build_crl(session, CRLGenerationRequest(ca_id=ca.id), ctx, clock()).crl

        assert [e.serial_number for e in unsigned.entries] == [3, 7]
        assert unsigned.entries[1].revocation_date == T0 - timedelta(hours=5)

    def test_disabled_ca_raises(self, session, ctx, clock, make_ca):
        ca = make_ca(session)
        session.add(CRLConfiguration(ca_id=ca.id, enabled=False))
        session.commit()

        with pytest.raises(ConfigurationError):
            build_crl(session, CRLGenerationRequest(ca_id=ca.id), ctx, clock())

    def test_unknown_ca_raises(self, session, ctx, clock):
        with pytest.raises(NotFoundError):
            build_crl(session, CRLGenerationRequest(ca_id=404), ctx, clock())


class TestEncoding:
    """TBSCertList layout"""

    def _unsigned(self, session, ctx, clock, make_ca, make_leaf, **config):
        ca = make_ca(session)
        if config:
            session.add(CRLConfiguration(ca_id=ca.id, **config))
            session.commit()
        make_leaf(session, ca, 0xA1, revoked_at=T0 - timedelta(hours=3), reason="key_compromise")
        make_leaf(session, ca, 0xB2, revoked_at=T0 - timedelta(hours=2))
        return ca, build_crl(session, CRLGenerationRequest(ca_id=ca.id), ctx, clock()).crl

    def test_v2_with_extensions(self, session, ctx, clock, make_ca, make_leaf):
        ca, unsigned = self._unsigned(session, ctx, clock, make_ca, make_leaf)

        tbs = asn1_crl.TbsCertList.load(encode_tbs(unsigned, "sha256_ecdsa").dump())

        assert tbs["version"].native == "v2"
        assert tbs["signature"]["algorithm"].native == "sha256_ecdsa"
        assert tbs["this_update"].native == T0.replace(tzinfo=timezone.utc)
        extensions = {ext["extn_id"].native: ext["extn_value"].native for ext in tbs["crl_extensions"]}
        assert extensions["crl_number"] == 1
        ca_key = crypto_service.load_certificate(ca.certificate_der).public_key()
        assert extensions["authority_key_identifier"]["key_identifier"] == crypto_service.key_identifier(ca_key)

    def test_entry_reason_extension(self, session, ctx, clock, make_ca, make_leaf):
        _, unsigned = self._unsigned(session, ctx, clock, make_ca, make_leaf)

        tbs = asn1_crl.TbsCertList.load(encode_tbs(unsigned, "sha256_ecdsa").dump())
        entries = {e["user_certificate"].native: e for e in tbs["revoked_certificates"]}

        assert entries[0xA1].crl_reason_value.native == "key_compromise"
        assert entries[0xB2].crl_reason_value is None

    def test_without_extensions(self, session, ctx, clock, make_ca, make_leaf):
        _, unsigned = self._unsigned(
            session, ctx, clock, make_ca, make_leaf, include_extensions=False
        )

        tbs = asn1_crl.TbsCertList.load(encode_tbs(unsigned, "sha256_ecdsa").dump())

        assert tbs["crl_extensions"].native is None

    def test_encoding_is_deterministic(self, session, ctx, clock, make_ca, make_leaf):
        _, unsigned = self._unsigned(session, ctx, clock, make_ca, make_leaf)

        assert encode_tbs(unsigned, "sha256_rsa").dump() == encode_tbs(unsigned, "sha256_rsa").dump()

    def test_generalized_time_from_2050(self):
        assert asn1_time(datetime(2049, 12, 31, 23, 59, 59)).name == "utc_time"
        assert asn1_time(datetime(2050, 1, 1)).name == "general_time"
