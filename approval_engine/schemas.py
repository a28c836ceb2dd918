"""
Pydantic schemas for engine inputs
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Dict, Optional, Any
from pydantic import BaseModel, Field, field_validator

from .approval_requests import Priority, Severity


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC; aware ones are converted to UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubmitRequestModel(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    request_type: str = Field(..., min_length=1, description="e.g. expense, recruitment, fee_assignment")
    requester_id: str = Field(..., min_length=1)
    request_category: Optional[str] = None
    context_payload: Dict[str, Any] = Field(default_factory=dict)
    amount: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    reference_id: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    department: Optional[str] = None
    priority: Priority = Priority.NORMAL
    impact_level: Severity = Severity.MEDIUM
    urgency_level: Severity = Severity.MEDIUM
    deadline: Optional[datetime] = None

    @field_validator("deadline")
    @classmethod
    def deadline_as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class GrantExceptionModel(BaseModel):
    reason: str = Field(..., min_length=1)
    authorized_by: str = Field(..., min_length=1)
    applies_to_level: Optional[int] = Field(None, ge=1)
    valid_until: Optional[datetime] = None
    original_rule: Dict[str, Any] = Field(default_factory=dict)
    override_rule: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("valid_until")
    @classmethod
    def valid_until_as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)
