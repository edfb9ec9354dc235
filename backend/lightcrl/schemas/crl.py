from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from lightcrl.models.crl import CRLStatus, RevocationReason


TriggerReason = Literal["scheduled", "manual", "revocation", "emergency"]
Priority = Literal["low", "medium", "high", "critical"]
ExportFormat = Literal["pem", "der"]


class CRLGenerationRequest(BaseModel):
    ca_id: int = Field(..., description="ID of the CA certificate")
    reason: TriggerReason = "manual"
    priority: Priority = "medium"
    custom_validity_hours: Optional[int] = Field(None, ge=1, le=24 * 366)
    include_expired: Optional[bool] = None
    force_regeneration: bool = False
    requested_by: str = "system"


class RevokedEntry(BaseModel):
    serial_number: int
    revocation_date: datetime
    reason: RevocationReason = RevocationReason.UNSPECIFIED


class CRLDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ca_id: int
    crl_number: int
    issuer: str
    this_update: datetime
    next_update: datetime
    status: CRLStatus
    signature_algorithm: str
    is_signed: bool
    size: int
    trigger_reason: str
    generated_by: str
    generated_at: datetime
    distribution_points: List[int] = []


class CRLListResponse(BaseModel):
    crls: list[CRLDetail]
    total: int
    page: int
    per_page: int


class PointResult(BaseModel):
    point_id: int
    url: str
    success: bool
    status_code: Optional[int] = None
    response_time_ms: float = 0.0
    error: Optional[str] = None


class DistributionResult(BaseModel):
    crl_id: int
    success: bool
    per_point_results: List[PointResult] = []

    @property
    def failed_points(self) -> List[int]:
        return [r.point_id for r in self.per_point_results if not r.success]


class GenerationResult(BaseModel):
    success: bool
    generated: bool = False
    message: str
    error_code: Optional[str] = None
    crl: Optional[CRLDetail] = None
    distribution: Optional[DistributionResult] = None


class RetryResult(BaseModel):
    retried: int = 0
    successful: int = 0
    failed: int = 0
    abandoned: int = 0


class ProbeResult(BaseModel):
    total: int
    successful: int
    failed: int
    results: List[PointResult] = []


class CRLValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = []
    warnings: List[str] = []
    details: Dict[str, Any] = {}


class CRLValidateRequest(BaseModel):
    ca_id: int
    crl_pem: str = Field(..., min_length=1)


class ExportResult(BaseModel):
    format: ExportFormat
    data: bytes
    filename: str

    @property
    def media_type(self) -> str:
        return "application/x-pem-file" if self.format == "pem" else "application/pkix-crl"


class CleanupRequest(BaseModel):
    retention_days: Optional[int] = Field(None, ge=1)


class CleanupResult(BaseModel):
    deleted: int = 0
    errors: List[str] = []


class RetryRequest(BaseModel):
    ca_id: Optional[int] = None
    max_retries: Optional[int] = Field(None, ge=1)


class CRLStatistics(BaseModel):
    total_crls: int = 0
    active_crls: int = 0
    superseded_crls: int = 0
    expired_crls: int = 0
    total_revoked_certificates: int = 0
    average_crl_size: float = 0.0
    last_generation_time: Optional[datetime] = None
    next_scheduled_generation: Optional[datetime] = None
    generation_success_rate: float = 100.0
    distribution_success_rate: float = 100.0
    most_recent_crl_id: Optional[int] = None


class RevocationRecord(BaseModel):
    serial_number: str
    revoked_at: datetime
    reason: str


class CRLRevocationsResponse(BaseModel):
    revocations: list[RevocationRecord]
    total: int
