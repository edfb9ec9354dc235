from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from lightcrl.database import Base


class CRLDistributionPoint(Base):
    """Publication target for a CA's CRLs.

    Counters and timestamps are written only by the distribution engine.
    """

    __tablename__ = "crl_distribution_points"

    id = Column(Integer, primary_key=True, index=True)
    ca_id = Column(Integer, ForeignKey("certificates.id"), nullable=False, index=True)
    url = Column(String(1024), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    priority = Column(Integer, nullable=False, default=100)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    average_response_time_ms = Column(Float, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)


class CRLDeliveryAttempt(Base):
    __tablename__ = "crl_delivery_attempts"

    id = Column(Integer, primary_key=True, index=True)
    crl_id = Column(Integer, ForeignKey("crls.id", ondelete="CASCADE"), nullable=False, index=True)
    point_id = Column(
        Integer, ForeignKey("crl_distribution_points.id"), nullable=False, index=True
    )
    attempt = Column(Integer, nullable=False, default=1)
    success = Column(Boolean, nullable=False)
    status_code = Column(Integer, nullable=True)
    response_time_ms = Column(Float, nullable=False, default=0.0)
    error = Column(Text, nullable=True)
    # failed deliveries waiting for retry_failed_deliveries()
    pending_retry = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime, nullable=False, index=True)

    crl = relationship("CRL", back_populates="delivery_attempts")
    point = relationship("CRLDistributionPoint")
