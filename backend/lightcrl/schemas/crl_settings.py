from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SecurityOptions(BaseModel):
    sign_crl: bool = True
    include_issuer: bool = True
    include_extensions: bool = True


class NotificationOptions(BaseModel):
    notify_on_generation: bool = False
    notify_on_failure: bool = True
    notify_on_distribution_failure: bool = True


class DistributionPointConfig(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ca_id: int
    url: str
    enabled: bool = True
    priority: int = 100
    success_count: int = 0
    failure_count: int = 0
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_error: Optional[str] = None
    average_response_time_ms: Optional[float] = None


class CRLConfig(BaseModel):
    """Everything the engine needs to know about one CA's CRL settings."""

    ca_id: int
    enabled: bool = True
    auto_generate: bool = True
    validity_hours: int = 168
    overlap_hours: int = 2
    include_expired: bool = False
    distribution_points: List[DistributionPointConfig] = []
    security: SecurityOptions = SecurityOptions()
    notifications: NotificationOptions = NotificationOptions()

    @property
    def enabled_points(self) -> List[DistributionPointConfig]:
        return sorted(
            (p for p in self.distribution_points if p.enabled),
            key=lambda p: (p.priority, p.id),
        )


class CRLConfigUpdate(BaseModel):
    enabled: bool = True
    auto_generate: bool = True
    validity_hours: int = Field(168, ge=1, le=24 * 366)
    overlap_hours: int = Field(2, ge=0)
    include_expired: bool = False
    security: SecurityOptions = SecurityOptions()
    notifications: NotificationOptions = NotificationOptions()

    @model_validator(mode="after")
    def check_overlap(self):
        if self.overlap_hours >= self.validity_hours:
            raise ValueError("overlap_hours must be smaller than validity_hours")
        return self


class DistributionPointCreate(BaseModel):
    url: str = Field(..., min_length=1, max_length=1024, pattern=r"^https?://")
    enabled: bool = True
    priority: int = Field(100, ge=0)


class DistributionPointUpdate(BaseModel):
    url: Optional[str] = Field(None, min_length=1, max_length=1024, pattern=r"^https?://")
    enabled: Optional[bool] = None
    priority: Optional[int] = Field(None, ge=0)
