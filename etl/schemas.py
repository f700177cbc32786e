"""
Pydantic models for inbound opportunity records.

Shape validation happens here; cross-field rules (matchable attributes,
certification deadlines) are enforced by the ingestor.
"""
from datetime import datetime, timezone
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.matcher.models import EventKind


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventAttributes(BaseModel):
    """Matchable and display attributes. Unknown keys are kept in the raw payload."""
    model_config = ConfigDict(extra='allow')

    skills: List[str] = Field(default_factory=list, description="Skill tags; a comma separated string is accepted")
    location: Optional[str] = None
    deadline: Optional[datetime] = None
    title: Optional[str] = None
    company: Optional[str] = None
    url: Optional[str] = None
    job_type: Optional[str] = None

    @field_validator('skills', mode='before')
    @classmethod
    def _split_skills(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [s for s in v.split(',')]
        return v

    @field_validator('skills')
    @classmethod
    def _normalise_skills(cls, v: List[str]) -> List[str]:
        seen = []
        for skill in v:
            skill = skill.strip().lower()
            if skill and skill not in seen:
                seen.append(skill)
        return seen

    @field_validator('location')
    @classmethod
    def _strip_location(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @field_validator('deadline')
    @classmethod
    def _deadline_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class SourceRecord(BaseModel):
    """One raw record as delivered by an upstream source."""
    model_config = ConfigDict(str_strip_whitespace=True)

    source: str = Field(min_length=1)
    id: str = Field(min_length=1)
    version: int = Field(default=1, ge=1)
    kind: EventKind
    attributes: EventAttributes = Field(default_factory=EventAttributes)
    timestamp: Optional[datetime] = None

    @field_validator('id', mode='before')
    @classmethod
    def _id_as_str(cls, v: Union[str, int]):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator('kind', mode='before')
    @classmethod
    def _kind_upper(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator('timestamp')
    @classmethod
    def _timestamp_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)
