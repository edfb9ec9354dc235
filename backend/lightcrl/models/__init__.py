from lightcrl.models.certificate import Certificate, CertificateType, CertificateStatus
from lightcrl.models.key import Key, KeyAlgorithm
from lightcrl.models.crl import CRL, CRLEntry, CRLNumberSequence, CRLStatus, RevocationReason
from lightcrl.models.distribution import CRLDistributionPoint, CRLDeliveryAttempt
from lightcrl.models.settings import CRLConfiguration, CRLGenerationLog

__all__ = [
    "Certificate",
    "CertificateType",
    "CertificateStatus",
    "Key",
    "KeyAlgorithm",
    "CRL",
    "CRLEntry",
    "CRLNumberSequence",
    "CRLStatus",
    "RevocationReason",
    "CRLDistributionPoint",
    "CRLDeliveryAttempt",
    "CRLConfiguration",
    "CRLGenerationLog",
]
