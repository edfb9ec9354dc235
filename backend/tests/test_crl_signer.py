import pytest
from asn1crypto import crl as asn1_crl

from lightcrl.errors import SigningError
from lightcrl.models import CRLConfiguration, KeyAlgorithm
from lightcrl.schemas.crl import CRLGenerationRequest
from lightcrl.services import crypto_service
from lightcrl.services.collaborators import KeyStoreSigner, SignatureResult
from lightcrl.services.crl_builder import build_crl, encode_tbs
from lightcrl.services.crl_signer import sign_crl


class BrokenSigner:
    def signature_algorithm(self, ca_id):
        return "sha256_rsa"

    def sign(self, payload, ca_id):
        raise RuntimeError("HSM offline")


class LyingSigner:
    def signature_algorithm(self, ca_id):
        return "sha256_rsa"

    def sign(self, payload, ca_id):
        return SignatureResult(algorithm="sha256_ecdsa", signature=b"\x01\x02")


def _unsigned(session, ctx, clock, ca):
    return build_crl(session, CRLGenerationRequest(ca_id=ca.id), ctx, clock()).crl


class TestSignCRL:
    """Signing through the key store adapter"""

    @pytest.mark.parametrize(
        "algorithm, key_size, expected",
        [
            (KeyAlgorithm.RSA, 2048, "sha256_rsa"),
            (KeyAlgorithm.ECDSA, None, "sha256_ecdsa"),
            (KeyAlgorithm.EdDSA, None, "ed25519"),
        ],
    )
    def test_signature_verifies(self, session, ctx, clock, make_ca, algorithm, key_size, expected):
        ca = make_ca(session, algorithm=algorithm, key_size=key_size)
        unsigned = _unsigned(session, ctx, clock, ca)

        finalized = sign_crl(unsigned, KeyStoreSigner(session))

        assert finalized.is_signed
        assert finalized.signature_algorithm == expected
        cert_list = asn1_crl.CertificateList.load(finalized.der)
        assert cert_list["signature_algorithm"]["algorithm"].native == expected
        assert cert_list["signature"].native == finalized.signature
        public_key = crypto_service.load_certificate(ca.certificate_der).public_key()
        assert crypto_service.verify_signature(
            public_key, finalized.signature, cert_list["tbs_cert_list"].dump(), expected
        )

    def test_signed_payload_is_the_tbs(self, session, ctx, clock, make_ca):
        ca = make_ca(session)
        unsigned = _unsigned(session, ctx, clock, ca)

        finalized = sign_crl(unsigned, KeyStoreSigner(session))

        cert_list = asn1_crl.CertificateList.load(finalized.der)
        assert cert_list["tbs_cert_list"].dump() == encode_tbs(unsigned, "sha256_ecdsa").dump()

    def test_password_protected_key(self, session, ctx, clock, make_ca):
        ca = make_ca(session, algorithm=KeyAlgorithm.EdDSA, password="s3cret")
        finalized = sign_crl(_unsigned(session, ctx, clock, ca), KeyStoreSigner(session))
        assert finalized.signature_algorithm == "ed25519"

    def test_unsigned_when_disabled(self, session, ctx, clock, make_ca):
        ca = make_ca(session)
        session.add(CRLConfiguration(ca_id=ca.id, sign_crl=False))
        session.commit()
        unsigned = _unsigned(session, ctx, clock, ca)

        finalized = sign_crl(unsigned, BrokenSigner())

        assert finalized.is_signed is False
        assert finalized.signature is None
        assert asn1_crl.CertificateList.load(finalized.der)["signature"].native == b""

    def test_signer_failure_raises(self, session, ctx, clock, make_ca):
        ca = make_ca(session)
        with pytest.raises(SigningError, match="HSM offline"):
            sign_crl(_unsigned(session, ctx, clock, ca), BrokenSigner())

    def test_algorithm_mismatch_raises(self, session, ctx, clock, make_ca):
        ca = make_ca(session)
        with pytest.raises(SigningError, match="expected sha256_rsa"):
            sign_crl(_unsigned(session, ctx, clock, ca), LyingSigner())

    def test_missing_key_raises(self, session, ctx, clock, make_ca):
        ca = make_ca(session)
        ca.key.is_deleted = True
        session.commit()

        with pytest.raises(SigningError, match="No signing key"):
            sign_crl(_unsigned(session, ctx, clock, ca), KeyStoreSigner(session))
