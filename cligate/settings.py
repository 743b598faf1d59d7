from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Read from OS env and an optional .env file in the working directory.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Configuration snapshot
    config_path: str = Field(
        str(Path.home() / ".cligate" / "cligate.json"),
        alias="CLIGATE_CONFIG_PATH",
        description="Path of the JSON document holding providers and profiles",
    )
    profile: str = Field(
        "default",
        alias="CLIGATE_PROFILE",
        description="Profile served when the app is started through main.py",
    )
    cli_family: str = Field(
        "claude",
        alias="CLIGATE_CLI_FAMILY",
        description="Calling CLI family when started through main.py: claude / codex / opencode",
    )

    # Listener
    host: str = Field(
        "127.0.0.1",
        alias="CLIGATE_HOST",
        description="Loopback address the proxy binds to",
    )
    port: int = Field(
        0,
        alias="CLIGATE_PORT",
        description="Port the proxy binds to; 0 picks an ephemeral port",
    )

    # Logging
    log_level: str = Field(
        "INFO",
        alias="CLIGATE_LOG_LEVEL",
        description="Log level for the cligate logger, e.g. DEBUG / INFO / WARNING",
    )
    log_timezone: str | None = Field(
        default=None,
        alias="CLIGATE_LOG_TIMEZONE",
        description="IANA timezone for log timestamps, e.g. Asia/Shanghai; system local time when unset",
    )
    log_dir: str = Field(
        "logs",
        alias="CLIGATE_LOG_DIR",
        description="Directory for cligate.log and its rotated copies",
    )
    log_backup_days: int = Field(
        7,
        alias="CLIGATE_LOG_BACKUP_DAYS",
        description="How many rotated daily log files to keep",
    )

    # Failover
    attempt_timeout_seconds: float = Field(
        300.0,
        alias="CLIGATE_ATTEMPT_TIMEOUT_SECONDS",
        description="Deadline for one candidate to produce a response status",
    )
    stream_read_timeout_seconds: float = Field(
        600.0,
        alias="CLIGATE_STREAM_READ_TIMEOUT_SECONDS",
        description="Read timeout between chunks once a response is streaming",
    )
    retryable_status_codes: str = Field(
        "401-403,408,429,500-599",
        alias="CLIGATE_RETRYABLE_STATUS_CODES",
        description="Upstream statuses that fail over to the next candidate, e.g. 429,500-599",
    )
    max_failover_attempts: int | None = Field(
        default=None,
        alias="CLIGATE_MAX_FAILOVER_ATTEMPTS",
        description="Upper bound on attempts per request; the whole chain when unset",
    )
    translation_failures_consume_attempts: bool = Field(
        True,
        alias="CLIGATE_TRANSLATION_FAILURES_CONSUME_ATTEMPTS",
        description="Whether translation failures count toward CLIGATE_MAX_FAILOVER_ATTEMPTS",
    )
    shutdown_grace_seconds: float = Field(
        10.0,
        alias="CLIGATE_SHUTDOWN_GRACE_SECONDS",
        description="How long in-flight requests may drain when the session stops",
    )

    # Wire formats
    anthropic_version: str = Field(
        "2023-06-01",
        alias="CLIGATE_ANTHROPIC_VERSION",
        description="anthropic-version header sent to native Anthropic providers",
    )
    bedrock_anthropic_version: str = Field(
        "bedrock-2023-05-31",
        alias="CLIGATE_BEDROCK_ANTHROPIC_VERSION",
        description="anthropic_version body field sent to Bedrock providers",
    )
    azure_api_version: str = Field(
        "2024-10-21",
        alias="CLIGATE_AZURE_API_VERSION",
        description="api-version query parameter for Azure OpenAI deployments",
    )
    default_max_tokens: int = Field(
        4096,
        alias="CLIGATE_DEFAULT_MAX_TOKENS",
        description="max_tokens used when an OpenAI-shape request without a limit goes to an Anthropic-shape provider",
    )

    # Request log
    request_log_max_entries: int = Field(
        2000,
        alias="CLIGATE_REQUEST_LOG_MAX_ENTRIES",
        description="Attempts kept in memory for /_cligate/logs",
    )
    request_log_file: str | None = Field(
        default=None,
        alias="CLIGATE_REQUEST_LOG_FILE",
        description="Optional JSONL file every recorded attempt is appended to",
    )


settings = Settings()
