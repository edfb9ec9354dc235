import json
from enum import Enum
from typing import List

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from lightcrl.database import Base


class CRLStatus(str, Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"


class RevocationReason(str, Enum):
    """PKIX CRLReason values, named as asn1crypto names them."""

    UNSPECIFIED = "unspecified"
    KEY_COMPROMISE = "key_compromise"
    CA_COMPROMISE = "ca_compromise"
    AFFILIATION_CHANGED = "affiliation_changed"
    SUPERSEDED = "superseded"
    CESSATION_OF_OPERATION = "cessation_of_operation"
    CERTIFICATE_HOLD = "certificate_hold"
    REMOVE_FROM_CRL = "remove_from_crl"
    PRIVILEGE_WITHDRAWN = "privilege_withdrawn"
    AA_COMPROMISE = "aa_compromise"


class CRL(Base):
    __tablename__ = "crls"
    __table_args__ = (UniqueConstraint("ca_id", "crl_number", name="uq_crls_ca_number"),)

    id = Column(Integer, primary_key=True, index=True)
    ca_id = Column(Integer, ForeignKey("certificates.id"), nullable=False, index=True)
    crl_number = Column(Integer, nullable=False, index=True)
    issuer = Column(String(512), nullable=False)
    this_update = Column(DateTime, nullable=False)
    next_update = Column(DateTime, nullable=False, index=True)
    signature_algorithm = Column(String(32), nullable=False)
    signature = Column(LargeBinary, nullable=True)
    is_signed = Column(Boolean, nullable=False, default=True)
    include_issuer = Column(Boolean, nullable=False, default=True)
    include_extensions = Column(Boolean, nullable=False, default=True)
    crl_der = Column(LargeBinary, nullable=False)
    status = Column(SQLEnum(CRLStatus), nullable=False, default=CRLStatus.ACTIVE, index=True)
    size = Column(Integer, nullable=False, default=0)
    trigger_reason = Column(String(16), nullable=False, default="manual")
    generated_by = Column(String(100), nullable=False, default="system")
    generated_at = Column(DateTime, server_default=func.now(), nullable=False, index=True)
    distribution_point_ids = Column(Text, nullable=False, default="[]")

    # Relationships
    ca = relationship("Certificate", backref="crls")
    entries = relationship(
        "CRLEntry",
        back_populates="crl",
        cascade="all, delete-orphan",
        order_by=lambda: [func.length(CRLEntry.serial_number), CRLEntry.serial_number],
    )
    delivery_attempts = relationship(
        "CRLDeliveryAttempt", back_populates="crl", cascade="all, delete-orphan"
    )

    @property
    def distribution_points(self) -> List[int]:
        return json.loads(self.distribution_point_ids or "[]")


class CRLEntry(Base):
    __tablename__ = "crl_entries"
    __table_args__ = (UniqueConstraint("crl_id", "serial_number", name="uq_crl_entries_serial"),)

    id = Column(Integer, primary_key=True, index=True)
    crl_id = Column(Integer, ForeignKey("crls.id", ondelete="CASCADE"), nullable=False, index=True)
    serial_number = Column(String(64), nullable=False)
    revocation_date = Column(DateTime, nullable=False)
    reason = Column(SQLEnum(RevocationReason), nullable=False, default=RevocationReason.UNSPECIFIED)

    crl = relationship("CRL", back_populates="entries")


class CRLNumberSequence(Base):
    """Highest CRL number ever issued per CA; survives deletion of the CRLs themselves."""

    __tablename__ = "crl_number_sequences"

    id = Column(Integer, primary_key=True, index=True)
    ca_id = Column(Integer, ForeignKey("certificates.id"), nullable=False, unique=True)
    last_number = Column(Integer, nullable=False, default=0)
