import yaml
import os
from typing import Optional, Dict, Literal
from pydantic import BaseModel, Field


class DatabaseConfig(BaseModel):
    url: str = "sqlite:///opportunity_alerts.db"
    echo: bool = False


class RedisConfig(BaseModel):
    url: Optional[str] = None  # None = Redis disabled


class IngestionConfig(BaseModel):
    """Configuration for the event ingestor and the match stage feeding off it."""
    match_queue_size: int = 1000  # Bounded hand-off between ingestor and matcher workers
    matcher_workers: int = 4
    submit_timeout_seconds: float = 30.0  # How long submit() blocks on a full match queue
    rematch_after_seconds: int = 300  # Unmatched events older than this are matched again by the scheduler
    rematch_batch_size: int = 100


class MatchingConfig(BaseModel):
    """
    Configuration for rule-based matching.

    Deadline handling only applies to CERTIFICATION_DEADLINE events.
    """
    default_lead_time_days: int = 7
    imminent_deadline_hours: int = 72  # Deadlines this close (inclusive) produce HIGH priority intents


class DedupConfig(BaseModel):
    backend: Literal["database", "redis"] = "database"
    ttl_hours: int = 72  # Idempotency horizon for intent keys


class RateLimitConfig(BaseModel):
    """
    Per-(user, channel) fixed window limits.

    Subscriptions may override max_per_window/window_seconds.
    """
    default_max_per_window: int = 5
    default_window_seconds: int = 24 * 60 * 60
    priority_override_cap: int = 1  # High priority intents allowed past the cap per window


class DispatchConfig(BaseModel):
    queue_size: int = 500  # Per lane
    lanes_per_channel: int = 2
    enqueue_timeout_seconds: float = 5.0
    backpressure_delay_seconds: int = 30
    lease_seconds: int = 300  # Queued/dispatched records are recovered after this
    adapter_timeout_seconds: float = 10.0
    drain_timeout_seconds: float = 30.0


class RetryConfig(BaseModel):
    base_backoff_seconds: float = 30.0
    max_backoff_seconds: float = 6 * 60 * 60
    max_attempts: int = 6
    jitter_ratio: float = 0.1  # Jitter is uniform in [0, ratio * delay]
    poll_interval_seconds: float = 5.0
    batch_size: int = 100


class RetentionConfig(BaseModel):
    event_days: int = 30
    delivery_days: int = 30


class EmailChannelConfig(BaseModel):
    enabled: bool = True
    smtp_server: Optional[str] = None
    smtp_port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    from_email: str = "noreply@opportunity-alerts.app"


class HttpChannelConfig(BaseModel):
    """Configuration for HTTP gateway based channels (SMS, push)."""
    enabled: bool = True
    gateway_url: Optional[str] = None
    api_key: Optional[str] = None
    sender_id: Optional[str] = None


class ChannelsConfig(BaseModel):
    dry_run: bool = False  # Log instead of sending
    email: EmailChannelConfig = Field(default_factory=EmailChannelConfig)
    sms: HttpChannelConfig = Field(default_factory=HttpChannelConfig)
    push: HttpChannelConfig = Field(default_factory=HttpChannelConfig)


class PreferencesConfig(BaseModel):
    """
    Where subscriptions are read from.

    url takes precedence over file; with neither, an empty in-memory store is used.
    """
    url: Optional[str] = None
    file: Optional[str] = None
    api_key: Optional[str] = None
    request_timeout_seconds: int = 30


class WebConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080


class AppConfig(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    preferences: PreferencesConfig = Field(default_factory=PreferencesConfig)
    web: WebConfig = Field(default_factory=WebConfig)


def _apply_env_overrides(data: Dict) -> Dict:
    """Apply environment variable overrides to the raw config dict."""
    # Allow env var override for DB URL
    env_db_url = os.environ.get("DATABASE_URL")
    if env_db_url:
        data.setdefault('database', {})
        data['database']['url'] = env_db_url

    # Allow env var override for Redis URL
    env_redis_url = os.environ.get("REDIS_URL")
    if env_redis_url:
        data.setdefault('redis', {})
        data['redis']['url'] = env_redis_url

    env_preferences_url = os.environ.get("PREFERENCES_URL")
    if env_preferences_url:
        data.setdefault('preferences', {})
        data['preferences']['url'] = env_preferences_url

    env_dry_run = os.environ.get("NOTIFICATION_DRY_RUN", "")
    if env_dry_run:
        data.setdefault('channels', {})
        data['channels']['dry_run'] = env_dry_run.lower() in ('true', '1', 'yes')

    if os.environ.get("WEB_HOST"):
        data.setdefault('web', {})
        data['web']['host'] = os.environ["WEB_HOST"]

    if os.environ.get("WEB_PORT"):
        data.setdefault('web', {})
        data['web']['port'] = int(os.environ["WEB_PORT"])

    # SMTP credentials are usually injected as secrets rather than written to config.yaml
    for env_key, field in (
        ('SMTP_SERVER', 'smtp_server'),
        ('SMTP_PORT', 'smtp_port'),
        ('SMTP_USERNAME', 'username'),
        ('SMTP_PASSWORD', 'password'),
        ('FROM_EMAIL', 'from_email'),
    ):
        if os.environ.get(env_key):
            data.setdefault('channels', {}).setdefault('email', {})
            data['channels']['email'][field] = os.environ[env_key]

    return data


def load_config(config_path: str = "config.yaml") -> AppConfig:
    # If not found at relative path (e.g. running from another directory), try the project root
    if not os.path.exists(config_path):
        base_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(base_dir, "..", "config.yaml")

    data: Dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}

    return AppConfig(**_apply_env_overrides(data))
