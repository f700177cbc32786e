"""Preference Store boundary and the read cache the matcher works from.

Subscriptions are owned by the external profile service. The pipeline only
reads them: a PreferenceStore hands out pages of changes since a cursor, and
PreferenceCache folds those pages into an immutable PreferenceSnapshot.
Staleness is tolerated; a failed refresh keeps the previous snapshot.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_fixed,
    retry_if_exception,
    before_sleep_log
)

from core.exceptions import PipelineUnavailableError
from core.matcher.models import Channel, Criteria, PreferenceSnapshot, UserPreference

logger = logging.getLogger(__name__)


class CriteriaPayload(BaseModel):
    skills: List[str] = Field(default_factory=list)
    location: Optional[str] = None
    job_types: List[str] = Field(default_factory=list)
    channels: List[Channel] = Field(default_factory=lambda: [Channel.EMAIL])
    max_per_window: Optional[int] = Field(default=None, ge=1)
    window_seconds: Optional[int] = Field(default=None, ge=1)
    lead_time_days: Optional[int] = Field(default=None, ge=0)

    @field_validator('channels', mode='before')
    @classmethod
    def _lower_channels(cls, v):
        if isinstance(v, list):
            return [c.lower() if isinstance(c, str) else c for c in v]
        return v


class PreferencePayload(BaseModel):
    """Wire shape of one subscription as served by the profile service."""
    user_id: str
    preference_id: Optional[str] = None
    criteria: CriteriaPayload = Field(default_factory=CriteriaPayload)
    contacts: Dict[str, str] = Field(default_factory=dict)
    active: bool = True
    updated_at: Optional[datetime] = None

    def to_domain(self) -> UserPreference:
        channels: List[Channel] = []
        for channel in self.criteria.channels:
            if channel not in channels:
                channels.append(channel)
        updated_at = self.updated_at
        if updated_at is not None and updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return UserPreference(
            user_id=self.user_id,
            preference_id=self.preference_id or f"{self.user_id}:default",
            criteria=Criteria(
                skills=frozenset(s.strip().lower() for s in self.criteria.skills if s.strip()),
                location=self.criteria.location,
                job_types=frozenset(k.strip().upper() for k in self.criteria.job_types if k.strip()),
                channels=tuple(channels),
                max_per_window=self.criteria.max_per_window,
                window_seconds=self.criteria.window_seconds,
                lead_time_days=self.criteria.lead_time_days,
            ),
            contacts={k.lower(): v for k, v in self.contacts.items()},
            active=self.active,
            updated_at=updated_at,
        )


def preference_from_dict(data: Dict[str, Any]) -> UserPreference:
    return PreferencePayload.model_validate(data).to_domain()


def _parse_preferences(items: List[Dict[str, Any]], origin: str) -> List[UserPreference]:
    """Parse a list of raw subscriptions, skipping (and logging) malformed ones."""
    preferences = []
    for index, item in enumerate(items):
        try:
            preferences.append(preference_from_dict(item))
        except PydanticValidationError as e:
            logger.warning(f"Skipping malformed preference #{index} from {origin}: {e.error_count()} errors")
    return preferences


@dataclass
class PreferencePage:
    preferences: List[UserPreference] = field(default_factory=list)
    cursor: Optional[str] = None
    has_more: bool = False
    full_snapshot: bool = False  # True when the page replaces everything seen so far


class PreferenceStore(ABC):
    """Read-only boundary to the profile/preference service."""

    @abstractmethod
    def get_active_preferences(self, since_cursor: Optional[str] = None) -> PreferencePage:
        """
        Return subscriptions changed since the cursor.

        With since_cursor=None the page holds active subscriptions only; with
        a cursor it may include deactivated ones so callers can drop them.
        """
        pass


class InMemoryPreferenceStore(PreferenceStore):
    """Process-local store, used by tests and the CLI when no service is configured."""

    def __init__(self, preferences: Optional[List[UserPreference]] = None):
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], Tuple[int, UserPreference]] = {}
        self._seq = 0
        for preference in preferences or []:
            self.upsert(preference)

    def upsert(self, preference: UserPreference) -> None:
        with self._lock:
            self._seq += 1
            self._entries[(preference.user_id, preference.preference_id)] = (self._seq, preference)

    def get_active_preferences(self, since_cursor: Optional[str] = None) -> PreferencePage:
        since = int(since_cursor) if since_cursor else 0
        with self._lock:
            changed = [
                pref for seq, pref in sorted(self._entries.values(), key=lambda e: e[0])
                if seq > since and (since_cursor or pref.active)
            ]
            return PreferencePage(preferences=changed, cursor=str(self._seq))


class FilePreferenceStore(PreferenceStore):
    """
    Subscriptions from a YAML or JSON file.

    The file's modification time is the cursor; any change re-reads the whole file.
    """

    def __init__(self, path: str):
        self.path = path

    def get_active_preferences(self, since_cursor: Optional[str] = None) -> PreferencePage:
        try:
            mtime = str(os.path.getmtime(self.path))
        except OSError as e:
            raise PipelineUnavailableError(f"Preference file unavailable: {self.path}") from e

        if since_cursor == mtime:
            return PreferencePage(cursor=mtime)

        with open(self.path, 'r') as f:
            if self.path.endswith('.json'):
                data = json.load(f)
            else:
                data = yaml.safe_load(f)

        items = data.get('preferences', []) if isinstance(data, dict) else (data or [])
        preferences = [p for p in _parse_preferences(items, self.path) if p.active]
        logger.info(f"Loaded {len(preferences)} active preferences from {self.path}")
        return PreferencePage(preferences=preferences, cursor=mtime, full_snapshot=True)


def _is_retryable_error(exc: Exception) -> bool:
    """Retry timeouts, connection errors and 5xx; never 4xx."""
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(exc, requests.HTTPError):
        response = getattr(exc, 'response', None)
        return response is None or response.status_code >= 500
    return False


class HttpPreferenceStore(PreferenceStore):
    """
    Client for the profile service's preference feed.

    GET {base_url}/preferences?since=<cursor> returns
    {"preferences": [...], "cursor": "...", "has_more": bool}.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        request_timeout_seconds: int = 30,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.request_timeout_seconds = request_timeout_seconds
        self.session = session or requests.Session()
        if api_key:
            self.session.headers['Authorization'] = f"Bearer {api_key}"

        logger.info(f"HttpPreferenceStore initialized: base_url={self.base_url}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(2),
        retry=retry_if_exception(_is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    def _fetch(self, since_cursor: Optional[str]) -> Dict[str, Any]:
        params = {'since': since_cursor} if since_cursor else {}
        response = self.session.get(
            f"{self.base_url}/preferences",
            params=params,
            timeout=self.request_timeout_seconds
        )
        response.raise_for_status()
        return response.json()

    def get_active_preferences(self, since_cursor: Optional[str] = None) -> PreferencePage:
        try:
            data = self._fetch(since_cursor)
        except requests.RequestException as e:
            raise PipelineUnavailableError(f"Preference service unavailable: {e}") from e

        preferences = _parse_preferences(data.get('preferences', []), self.base_url)
        if since_cursor is None:
            preferences = [p for p in preferences if p.active]
        return PreferencePage(
            preferences=preferences,
            cursor=data.get('cursor'),
            has_more=bool(data.get('has_more', False)),
        )


class PreferenceCache:
    """
    Folds incremental preference pages into an immutable snapshot.

    Matcher threads read `snapshot` without locking; refresh() swaps in a new
    snapshot object atomically.
    """

    def __init__(
        self,
        store: PreferenceStore,
        clock: Optional[Callable[[], datetime]] = None,
        max_pages: int = 1000
    ):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_pages = max_pages
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], UserPreference] = {}
        self._snapshot: Optional[PreferenceSnapshot] = None

    @property
    def snapshot(self) -> PreferenceSnapshot:
        if self._snapshot is None:
            return self.refresh()
        return self._snapshot

    def refresh(self) -> PreferenceSnapshot:
        """Pull changes from the store. Keeps the previous snapshot if the store is down."""
        with self._lock:
            cursor = self._snapshot.cursor if self._snapshot else None
            entries = dict(self._entries)
            try:
                for _ in range(self.max_pages):
                    page = self.store.get_active_preferences(cursor)
                    if page.full_snapshot:
                        entries = {}
                    for preference in page.preferences:
                        key = (preference.user_id, preference.preference_id)
                        if preference.active:
                            entries[key] = preference
                        else:
                            entries.pop(key, None)
                    cursor = page.cursor
                    if not page.has_more:
                        break
            except PipelineUnavailableError as e:
                if self._snapshot is None:
                    raise
                logger.error(f"Preference refresh failed, serving stale snapshot: {e}")
                return self._snapshot

            self._entries = entries
            self._snapshot = PreferenceSnapshot(
                preferences=tuple(entries.values()),
                cursor=cursor,
                refreshed_at=self.clock(),
            )
            logger.debug(f"Preference snapshot refreshed: {len(entries)} active subscriptions")
            return self._snapshot
