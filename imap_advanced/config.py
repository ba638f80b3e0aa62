"""Configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars; nested
configs are populated from their own prefixes.
"""

from __future__ import annotations

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings

from .models import AttachmentMode, OutputFormat, TriggerMode

MIN_POLL_INTERVAL_SECONDS = 10.0


class ImapConfig(BaseSettings):
    """IMAP server credentials and transport settings."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    username: str = Field(description="IMAP login username")
    password: SecretStr = Field(description="IMAP login password")
    allow_unauthorized_certs: bool = Field(
        default=False,
        description="Skip TLS certificate and hostname verification",
    )
    timeout_seconds: float | None = Field(
        default=60.0,
        description="Socket timeout applied by the transport",
    )


class TriggerConfig(BaseSettings):
    """Change-trigger surface: what to watch and how to shape emitted records."""

    model_config = {"env_prefix": "TRIGGER_"}

    trigger_id: str = Field(
        default="imap-advanced",
        description="Identity under which the watermark is persisted",
    )
    mailbox: str = Field(default="INBOX", description="Mailbox path to watch")
    mode: TriggerMode = Field(default=TriggerMode.AUTO, description="auto, idle or poll")
    poll_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between poll cycles (floor of 10s)",
    )
    safety_net_interval_seconds: float = Field(
        default=300.0,
        description="Poll interval backing up IDLE notifications",
    )
    output_format: OutputFormat = Field(default=OutputFormat.HEADERS_SNIPPET)
    attachments_mode: AttachmentMode = Field(default=AttachmentMode.NONE)
    binary_prefix: str = Field(default="attachment_")
    mark_seen: bool = Field(default=False, description="Add \\Seen after emission")
    add_flags_csv: str = Field(default="", description="Extra flags added after emission")
    move_to_mailbox: str = Field(default="", description="Move target after emission")
    max_attachment_size_mb: float = Field(default=25.0)
    allowed_mime_types: str = Field(default="", description="CSV of accepted MIME types")
    filename_regex: str = Field(default="", description="Pattern attachment names must match")
    idle_check_timeout_seconds: float = Field(
        default=15.0,
        description="Upper bound on a single IDLE wait; also bounds shutdown latency",
    )
    idle_renew_seconds: float = Field(
        default=25 * 60.0,
        description="Re-issue IDLE before the server's 29 minute limit",
    )

    @field_validator("poll_interval_seconds")
    @classmethod
    def _enforce_poll_floor(cls, value: float) -> float:
        return max(MIN_POLL_INTERVAL_SECONDS, value)


class S3Config(BaseSettings):
    """S3 storage for binary attachments."""

    model_config = {"env_prefix": "S3_"}

    bucket: str = Field(default="", description="S3 bucket name")
    prefix: str = Field(
        default="imap/attachments",
        description="S3 key prefix for attachment uploads",
    )
    region: str = Field(default="us-east-1", description="AWS region")
    endpoint_url: str | None = Field(
        default=None,
        description="Custom S3 endpoint URL (e.g. for MinIO)",
    )


class KafkaConfig(BaseSettings):
    """Kafka output for trigger records."""

    model_config = {"env_prefix": "KAFKA_"}

    bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Comma-separated Kafka bootstrap servers",
    )
    topic: str = Field(default="imap-messages", description="Topic for emitted records")
    dead_letter_topic: str = Field(
        default="imap-messages-dlq",
        description="Topic for records that exhausted delivery retries",
    )
    producer_acks: str = Field(default="all", description="Producer acknowledgement level")
    producer_compression: str = Field(
        default="gzip",
        description="Compression codec for produced messages",
    )


class RetryConfig(BaseSettings):
    """Retry / backoff settings driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=5, description="Maximum attempts per operation")
    initial_wait_seconds: float = Field(default=1.0, description="Initial backoff wait")
    max_wait_seconds: float = Field(default=60.0, description="Maximum backoff wait")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class RunnerConfig(BaseSettings):
    """Root configuration for a standalone trigger process."""

    model_config = {"env_prefix": "RUNNER_"}

    name: str = Field(default="imap-advanced-trigger", description="Process name in logs")
    health_port: int = Field(default=8080, description="Port for health probe endpoints")
    state_path: str = Field(
        default="imap_advanced_state.json",
        description="JSON file holding persisted watermarks",
    )
    log_json: bool = Field(default=True, description="Emit JSON log lines")
    log_level: str = Field(default="INFO")

    imap: ImapConfig = Field(default_factory=ImapConfig)
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    s3: S3Config = Field(default_factory=S3Config)
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
