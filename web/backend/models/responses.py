#!/usr/bin/env python3
"""
Response models for API endpoints.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Any


class FieldErrorModel(BaseModel):
    field: str
    reason: str


class IngestResultModel(BaseModel):
    """Outcome for one submitted record, in submission order."""
    index: int
    status: str  # ACCEPTED, DUPLICATE or REJECTED
    event_key: Optional[str] = None
    errors: List[FieldErrorModel] = Field(default_factory=list)


class IngestResponse(BaseModel):
    """Response after submitting a batch of events."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": True,
                "accepted": 1,
                "duplicates": 0,
                "rejected": 1,
                "results": [
                    {"index": 0, "status": "ACCEPTED", "event_key": "jobboard:J-1042|v1", "errors": []},
                    {
                        "index": 1,
                        "status": "REJECTED",
                        "event_key": None,
                        "errors": [{"field": "source", "reason": "Field required"}]
                    }
                ]
            }
        }
    )

    success: bool
    accepted: int
    duplicates: int
    rejected: int
    results: List[IngestResultModel]


class DeliveryRecordModel(BaseModel):
    """One delivery record: a single (intent, channel) attempt history."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "550e8400-e29b-41d4-a716-446655440000",
                "intent_key": "u-17|jobboard:J-1042|v1",
                "user_id": "u-17",
                "channel": "email",
                "status": "RETRY_SCHEDULED",
                "attempt_count": 2,
                "priority": "normal",
                "next_retry_at": "2026-03-01T09:01:00+00:00",
                "last_error": "SMTP server unavailable",
                "delivered_at": None,
                "created_at": "2026-03-01T09:00:00+00:00",
                "updated_at": "2026-03-01T09:00:30+00:00"
            }
        }
    )

    id: str
    intent_key: str
    user_id: str
    channel: str
    status: str
    attempt_count: int
    priority: str
    next_retry_at: Optional[str] = None
    last_error: Optional[str] = None
    delivered_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class DeliveryResponse(BaseModel):
    success: bool
    delivery: DeliveryRecordModel


class DeliveriesResponse(BaseModel):
    """Response containing a page of delivery records."""
    success: bool
    count: int
    deliveries: List[DeliveryRecordModel]


class StatsResponse(BaseModel):
    """Response containing stage counters, record status counts and queue depths."""
    success: bool
    stats: Dict[str, Any]
