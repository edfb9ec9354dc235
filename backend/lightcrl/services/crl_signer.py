import logging
from dataclasses import dataclass
from typing import Optional

from asn1crypto import crl as asn1_crl

from lightcrl.errors import SigningError
from lightcrl.services.collaborators import SigningAuthority
from lightcrl.services.crl_builder import UnsignedCRL, algorithm_identifier, encode_tbs

log = logging.getLogger(__name__)

# algorithm identifier written into CRLs that are left unsigned
UNSIGNED_PLACEHOLDER_ALGORITHM = "sha256_rsa"


@dataclass(frozen=True)
class FinalizedCRL:
    unsigned: UnsignedCRL
    der: bytes
    signature_algorithm: str
    signature: Optional[bytes]

    @property
    def is_signed(self) -> bool:
        return self.signature is not None


def _assemble(tbs: asn1_crl.TbsCertList, algorithm: str, signature: bytes) -> bytes:
    return asn1_crl.CertificateList(
        {
            "tbs_cert_list": tbs,
            "signature_algorithm": algorithm_identifier(algorithm),
            "signature": signature,
        }
    ).dump()


def sign_crl(unsigned: UnsignedCRL, signer: SigningAuthority) -> FinalizedCRL:
    """Produce the final artifact for ``unsigned``.

    With ``sign_crl`` off the artifact carries an empty signature; it is kept
    for internal use and rejected by the validator and distribution. Any
    signing-authority failure raises SigningError and produces nothing.
    """
    if not unsigned.security.sign_crl:
        tbs = encode_tbs(unsigned, UNSIGNED_PLACEHOLDER_ALGORITHM)
        log.warning("CRL #%d for CA %s is left unsigned", unsigned.crl_number, unsigned.ca_id)
        return FinalizedCRL(
            unsigned=unsigned,
            der=_assemble(tbs, UNSIGNED_PLACEHOLDER_ALGORITHM, b""),
            signature_algorithm=UNSIGNED_PLACEHOLDER_ALGORITHM,
            signature=None,
        )

    try:
        algorithm = signer.signature_algorithm(unsigned.ca_id)
        tbs = encode_tbs(unsigned, algorithm)
        result = signer.sign(tbs.dump(), unsigned.ca_id)
    except SigningError:
        raise
    except Exception as exc:
        raise SigningError(f"Signing authority failed for CA {unsigned.ca_id}: {exc}") from exc

    if result.algorithm != algorithm:
        raise SigningError(
            f"Signing authority returned {result.algorithm}, expected {algorithm} for CA {unsigned.ca_id}"
        )
    if not result.signature:
        raise SigningError(f"Signing authority returned an empty signature for CA {unsigned.ca_id}")

    return FinalizedCRL(
        unsigned=unsigned,
        der=_assemble(tbs, algorithm, result.signature),
        signature_algorithm=algorithm,
        signature=result.signature,
    )
