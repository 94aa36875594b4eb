from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

ON_DEMAND_CONTACT_NAME = "On-Demand Stress Check"
ON_DEMAND_CALL_DURATION = "N/A"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class SubscriptionTier(str, Enum):
    FREE = 'free'
    PREMIUM = 'premium'

class StressAnalysisResult(BaseModel):
    """One model verdict on a voice recording.

    ``stress_level`` is whatever the model returned; it is not clamped here.
    Use :meth:`display_level` where a value inside 0-100 is required.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    stress_level: int = Field(alias='stressLevel')
    analysis_details: str = Field(alias='analysisDetails')
    timestamp: datetime = Field(default_factory=utcnow)

    def display_level(self) -> int:
        return max(0, min(100, self.stress_level))

class CallReport(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    contact_name: Optional[str] = Field(default=None, alias='contactName')
    contact_number: str = Field(alias='contactNumber')
    call_duration: str = Field(default=ON_DEMAND_CALL_DURATION, alias='callDuration')
    stress_analysis: Optional[StressAnalysisResult] = Field(default=None, alias='stressAnalysis')
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def on_demand(cls, report_id: str, result: StressAnalysisResult, timestamp: Optional[datetime] = None) -> 'CallReport':
        """Build the report for a check run from the stress-check page."""
        return cls(
            id=report_id,
            contact_name=ON_DEMAND_CONTACT_NAME,
            contact_number=result.timestamp.strftime('%Y-%m-%d %H:%M:%S'),
            call_duration=ON_DEMAND_CALL_DURATION,
            stress_analysis=result,
            timestamp=timestamp or utcnow(),
        )

class Identity(BaseModel):
    """An account as the identity provider sees it."""
    model_config = ConfigDict(frozen=True)

    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    provider_id: str = 'unknown'

    @property
    def is_password_account(self) -> bool:
        return self.provider_id == 'email'

class UserProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    uid: str
    email: Optional[str] = None
    display_name: str
    photo_url: Optional[str] = None
    phone_number: Optional[str] = None
    monthly_checks_used: int = Field(default=0, ge=0)
    last_reset_date: datetime = Field(default_factory=utcnow)
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    created_at: datetime = Field(default_factory=utcnow)
    provider_id: str = 'unknown'

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')

class QuotaStatus(BaseModel):
    scope: str
    used: int
    limit: Optional[int]
    can_check: bool
    tier: Optional[SubscriptionTier] = None
    reset_error: Optional[str] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)
