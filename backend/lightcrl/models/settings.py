from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from lightcrl.database import Base


class CRLConfiguration(Base):
    """Per-CA CRL settings. CAs without a row use the ``Settings`` defaults."""

    __tablename__ = "crl_configurations"

    id = Column(Integer, primary_key=True, index=True)
    ca_id = Column(Integer, ForeignKey("certificates.id"), nullable=False, unique=True, index=True)
    enabled = Column(Boolean, nullable=False, default=True)
    auto_generate = Column(Boolean, nullable=False, default=True)
    validity_hours = Column(Integer, nullable=False, default=168)
    overlap_hours = Column(Integer, nullable=False, default=2)
    include_expired = Column(Boolean, nullable=False, default=False)
    sign_crl = Column(Boolean, nullable=False, default=True)
    include_issuer = Column(Boolean, nullable=False, default=True)
    include_extensions = Column(Boolean, nullable=False, default=True)
    notify_on_generation = Column(Boolean, nullable=False, default=False)
    notify_on_failure = Column(Boolean, nullable=False, default=True)
    notify_on_distribution_failure = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)


class CRLGenerationLog(Base):
    """One row per generation attempt that was due (skips are not logged)."""

    __tablename__ = "crl_generation_log"

    id = Column(Integer, primary_key=True, index=True)
    ca_id = Column(Integer, nullable=False, index=True)
    trigger_reason = Column(String(16), nullable=False)
    priority = Column(String(16), nullable=False, default="medium")
    requested_by = Column(String(100), nullable=False)
    success = Column(Boolean, nullable=False)
    message = Column(Text, nullable=True)
    crl_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)
