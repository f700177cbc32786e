#!/usr/bin/env python3
"""
Delivery endpoints - inspect delivery records.
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional

from ..dependencies import get_tracker
from ..models.responses import DeliveriesResponse, DeliveryResponse
from database.models import DeliveryStatus
from notification.tracker import DeliveryTracker

router = APIRouter(prefix="/api/deliveries", tags=["deliveries"])


@router.get("", response_model=DeliveriesResponse)
def list_deliveries(
    status: Optional[DeliveryStatus] = Query(None, description="Filter by record status"),
    user_id: Optional[str] = Query(None, description="Filter by user"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tracker: DeliveryTracker = Depends(get_tracker)
):
    """
    List delivery records, newest first.
    """
    records = tracker.list_records(
        status=status.value if status else None,
        user_id=user_id,
        limit=limit,
        offset=offset
    )
    return DeliveriesResponse(
        success=True,
        count=len(records),
        deliveries=[r.to_dict() for r in records]
    )


@router.get("/{record_id}", response_model=DeliveryResponse)
def get_delivery(record_id: str, tracker: DeliveryTracker = Depends(get_tracker)):
    """
    Get one delivery record.

    Raises:
        RecordNotFoundError: mapped to 404
    """
    return DeliveryResponse(success=True, delivery=tracker.get(record_id).to_dict())
