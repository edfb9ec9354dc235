import json
from enum import Enum
from typing import Any, Dict

from sqlalchemy import Column, Integer, String, Boolean, DateTime, LargeBinary, Text, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from lightcrl.database import Base


class CertificateType(str, Enum):
    ROOT = "root"
    INTERMEDIATE = "intermediate"
    LEAF = "leaf"


class CertificateStatus(str, Enum):
    VALID = "valid"
    REVOKED = "revoked"
    EXPIRED = "expired"


CA_TYPES = (CertificateType.ROOT, CertificateType.INTERMEDIATE)


class Certificate(Base):
    """Issued certificate record.

    CRLs are issued per CA certificate; leaf rows point at their CA through
    ``parent_id`` and carry the revocation state the CRL builder reads.
    """

    __tablename__ = "certificates"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(SQLEnum(CertificateType), nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("certificates.id"), nullable=True, index=True)
    key_id = Column(Integer, ForeignKey("keys.id"), nullable=True, index=True)
    serial_number = Column(String(64), unique=True, index=True)
    subject_cn = Column(String(255), index=True)
    not_before = Column(DateTime, nullable=False, index=True)
    not_after = Column(DateTime, nullable=False, index=True)
    status = Column(SQLEnum(CertificateStatus), default=CertificateStatus.VALID, index=True)
    certificate_der = Column(LargeBinary, nullable=False)
    meta_data = Column(Text, nullable=False, default="{}")
    revoked_at = Column(DateTime, nullable=True)
    is_deleted = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # Relationships
    parent = relationship("Certificate", remote_side=[id], backref="children")
    key = relationship("Key", back_populates="certificates")

    @property
    def is_ca(self) -> bool:
        return self.type in CA_TYPES

    @property
    def metadata_dict(self) -> Dict[str, Any]:
        if isinstance(self.meta_data, dict):
            return self.meta_data
        try:
            return json.loads(self.meta_data or "{}")
        except json.JSONDecodeError:
            return {}
