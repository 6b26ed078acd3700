"""Application settings with Pydantic validation."""

from typing import Any, Literal, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from courier.constants import (
    CONNECTION_PROFILES,
    DEFAULT_COUNTRY_CODE,
    DEFAULT_CREDENTIAL_PATH,
    DEFAULT_TRANSPORT,
    OTP,
    RATE_LIMIT_FLOOR_SECONDS,
    ConnectionProfile,
    Heartbeat,
    Queue,
    Timeouts,
)


class CourierSettings(BaseSettings):
    """Application settings with validation and environment variable support."""

    # Environment
    env: str = Field(
        default="production", description="Environment (production, development, testing)"
    )

    @model_validator(mode="before")
    @classmethod
    def default_env_for_pytest(cls, data: Any) -> Any:
        """Auto-detect testing environment when running under pytest."""
        import sys

        if not isinstance(data, dict):
            return data

        if ("env" not in data or not data.get("env")) and "pytest" in sys.modules:
            data["env"] = "testing"

        return data

    # Logging
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_json: bool = Field(default=True, description="Write the log file as JSON lines")

    # Credential storage
    encryption_key: Optional[SecretStr] = Field(
        default=None,
        description=(
            "Base64-encoded Fernet key used to encrypt the stored transport credential "
            "and the queue checkpoint. "
            'Generate with: python -c "from cryptography.fernet import Fernet; '
            'print(Fernet.generate_key().decode())"'
        ),
    )
    credential_path: str = Field(
        default=DEFAULT_CREDENTIAL_PATH, description="Where the transport session blob is kept"
    )

    # Connection supervisor
    connection_profile: Literal["standard", "persistent"] = Field(
        default="standard", description="Reconnect budget preset"
    )
    max_reconnect_attempts: Optional[int] = Field(
        default=None, ge=1, description="Override the profile's reconnect attempt cap"
    )
    backoff_base_delay: Optional[float] = Field(
        default=None, ge=0, description="Override the profile's base backoff delay (seconds)"
    )
    backoff_max_delay: Optional[float] = Field(
        default=None, ge=0, description="Override the profile's backoff ceiling (seconds)"
    )
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth factor")
    backoff_jitter: float = Field(
        default=1.0, ge=0, description="Upper bound of random jitter added to each delay"
    )
    rate_limit_floor: float = Field(
        default=RATE_LIMIT_FLOOR_SECONDS,
        ge=0,
        description="Minimum reconnect delay after the remote signals overload",
    )
    connect_timeout: float = Field(
        default=Timeouts.CONNECT, gt=0, description="Seconds to wait for auth or pairing code"
    )
    send_timeout: float = Field(default=Timeouts.SEND, gt=0, description="Per-send timeout")

    # Health monitor
    heartbeat_interval: float = Field(default=Heartbeat.INTERVAL_SECONDS, gt=0)
    heartbeat_timeout: float = Field(default=Heartbeat.PROBE_TIMEOUT_SECONDS, gt=0)
    heartbeat_stale_multiplier: int = Field(default=Heartbeat.STALE_MULTIPLIER, ge=1)

    # OTP
    otp_digits: int = Field(
        default=OTP.DEFAULT_DIGITS, ge=OTP.MIN_DIGITS, le=OTP.MAX_DIGITS, description="Code width"
    )
    otp_sweep_interval: float = Field(default=OTP.SWEEP_INTERVAL_SECONDS, gt=0)
    otp_rate_limit: str = Field(
        default="5/minute", description="slowapi limit for the OTP request endpoint"
    )

    # Delivery queue
    queue_max_attempts: int = Field(default=Queue.MAX_ATTEMPTS, ge=1)
    queue_max_size: int = Field(default=Queue.MAX_SIZE, ge=1)
    queue_max_age: float = Field(default=Queue.MAX_AGE_SECONDS, gt=0)
    queue_retry_delay: float = Field(default=Queue.RETRY_DELAY_SECONDS, ge=0)
    queue_poll_interval: float = Field(default=Queue.POLL_INTERVAL_SECONDS, gt=0)
    queue_checkpoint_path: Optional[str] = Field(
        default=None, description="Optional file the queue is checkpointed to on shutdown"
    )

    # Recipients
    admin_recipient: Optional[str] = Field(
        default=None, description="Phone number that receives admin notifications"
    )
    default_country_code: str = Field(
        default=DEFAULT_COUNTRY_CODE, description="Country code applied to local numbers"
    )
    sender_name: str = Field(default="Courier", description="Name used in message templates")

    # Transport and API
    transport: str = Field(
        default=DEFAULT_TRANSPORT, description="Transport factory as 'module:callable'"
    )
    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=8000, ge=1, le=65535)
    cors_allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated origins allowed to call the API",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value."""
        allowed = ["production", "development", "testing", "staging"]
        if v.lower() not in allowed:
            raise ValueError(f'ENV must be one of: {", ".join(allowed)}')
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f'LOG_LEVEL must be one of: {", ".join(allowed)}')
        return v_upper

    @field_validator("default_country_code")
    @classmethod
    def validate_country_code(cls, v: str) -> str:
        """Country code must be 1-3 digits, without a leading plus."""
        v = v.lstrip("+")
        if not v.isdigit() or not 1 <= len(v) <= 3:
            raise ValueError("DEFAULT_COUNTRY_CODE must be 1-3 digits")
        return v

    @field_validator("transport")
    @classmethod
    def validate_transport_path(cls, v: str) -> str:
        """Transport must be given as 'module:callable'."""
        module, _, attr = v.partition(":")
        if not module or not attr:
            raise ValueError("TRANSPORT must look like 'package.module:factory'")
        return v

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key_format(cls, v: Optional[SecretStr]) -> Optional[SecretStr]:
        """Validate encryption key format (should be base64)."""
        if v is None:
            return None

        import base64

        key_value = v.get_secret_value()

        try:
            decoded = base64.urlsafe_b64decode(key_value)
        except Exception:
            raise ValueError("ENCRYPTION_KEY must be a valid base64-encoded string")

        if len(decoded) != 32:
            raise ValueError(
                f"ENCRYPTION_KEY must decode to exactly 32 bytes, got {len(decoded)}. "
                "Generate a valid key with: "
                'python -c "from cryptography.fernet import Fernet; '
                'print(Fernet.generate_key().decode())"'
            )

        return v

    @model_validator(mode="after")
    def ensure_encryption_key_or_default(self) -> "CourierSettings":
        """
        Ensure encryption_key is set.

        In production/staging the key is required so the stored session
        credential is never written in plaintext. In testing/development a
        throwaway key is generated.

        Raises:
            ValueError: If the key is missing in production/staging
        """
        from cryptography.fernet import Fernet

        if self.encryption_key is None:
            if self.env in ("testing", "development"):
                self.encryption_key = SecretStr(Fernet.generate_key().decode())
            else:
                raise ValueError(
                    "ENCRYPTION_KEY is required in production/staging. "
                    'Generate with: python -c "from cryptography.fernet import Fernet; '
                    'print(Fernet.generate_key().decode())"'
                )
        return self

    @model_validator(mode="after")
    def validate_jitter_bound(self) -> "CourierSettings":
        """Jitter above base * (multiplier - 1) would let consecutive delays shrink."""
        limit = self.resolved_profile().base_delay * (self.backoff_multiplier - 1)
        if self.backoff_jitter > limit:
            raise ValueError(
                f"BACKOFF_JITTER must not exceed base delay * (multiplier - 1) = {limit}"
            )
        return self

    def resolved_profile(self) -> ConnectionProfile:
        """
        Get the reconnect budget with explicit overrides applied.

        Returns:
            ConnectionProfile for the supervisor's backoff policy
        """
        preset = CONNECTION_PROFILES[self.connection_profile]
        return ConnectionProfile(
            name=preset.name,
            max_attempts=self.max_reconnect_attempts or preset.max_attempts,
            base_delay=(
                self.backoff_base_delay
                if self.backoff_base_delay is not None
                else preset.base_delay
            ),
            max_delay=(
                self.backoff_max_delay if self.backoff_max_delay is not None else preset.max_delay
            ),
        )

    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.env == "development"

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.env == "production"


# Singleton instance
_settings: Optional[CourierSettings] = None


def get_settings() -> CourierSettings:
    """
    Get application settings singleton.

    Returns:
        CourierSettings instance

    Raises:
        ValidationError: If required settings are missing or invalid
    """
    global _settings
    if _settings is None:
        _settings = CourierSettings()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (useful for testing)."""
    global _settings
    _settings = None
