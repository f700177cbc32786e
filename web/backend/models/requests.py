#!/usr/bin/env python3
"""
Request models for API endpoints.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List


class EventBatchRequest(BaseModel):
    """
    A batch of raw source records.

    Records are validated one by one by the ingestor, so a malformed record
    only rejects itself; the request model only checks the envelope.
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "events": [
                    {
                        "source": "jobboard",
                        "id": "J-1042",
                        "version": 1,
                        "kind": "JOB",
                        "attributes": {
                            "title": "Backend Engineer",
                            "company": "Acme",
                            "skills": ["python", "postgres"],
                            "location": "Berlin"
                        },
                        "timestamp": "2026-03-01T09:00:00Z"
                    }
                ]
            }
        }
    )

    events: List[Dict[str, Any]] = Field(..., min_length=1, max_length=1000)
