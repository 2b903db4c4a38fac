"""
Configuration management for the registration coordinator
"""
import os
import yaml
from pathlib import Path
from typing import Optional, List
from pydantic import BaseModel, Field


class ConfigurationError(Exception):
    """Raised when a required setting is missing or invalid"""
    pass


class AppConfig(BaseModel):
    base_url: str = "http://localhost:8000"
    callback_secret: Optional[str] = None
    link_signing_secret: Optional[str] = None
    host: str = "127.0.0.1"
    port: int = 8000


class StorageConfig(BaseModel):
    state_file: Optional[str] = "state/campreg.json"


class PollingConfig(BaseModel):
    cadence_seconds: int = 60
    timeout: float = 15.0
    max_attempts: int = 2
    retry_delay_ms: int = 500
    requests_per_second: float = 2.0
    user_agent: str = "Mozilla/5.0 (compatible; CampRegistrationBot/1.0)"


class SeasonGuessConfig(BaseModel):
    """One row of the seasonal fallback calendar.

    While the current month is within [from_month, to_month], guess that
    registration opens on open_month/open_day (next year if next_year).
    """
    from_month: int
    to_month: int
    open_month: int
    open_day: int
    hour: int = 9
    next_year: bool = False


def _default_season_guesses() -> List[SeasonGuessConfig]:
    return [
        SeasonGuessConfig(from_month=1, to_month=3, open_month=3, open_day=1),
        SeasonGuessConfig(from_month=4, to_month=9, open_month=8, open_day=15),
        SeasonGuessConfig(from_month=10, to_month=12, open_month=3, open_day=1, next_year=True),
    ]


class WindowConfig(BaseModel):
    default_timezone: str = "America/Chicago"
    season_guesses: List[SeasonGuessConfig] = Field(default_factory=_default_season_guesses)


class ChallengeConfig(BaseModel):
    ticket_ttl_minutes: int = 10
    resend_interval_seconds: int = 120


class CheckpointConfig(BaseModel):
    max_per_session: int = 10
    max_recovery_minutes: int = 20
    directory: Optional[str] = None


class EmailConfig(BaseModel):
    enabled: bool = False
    sendgrid_api_key: Optional[str] = None
    from_address: str = "noreply@campreg.local"


class SMSConfig(BaseModel):
    enabled: bool = False
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None
    webhook_url: Optional[str] = None


class NotificationsConfig(BaseModel):
    email: EmailConfig = Field(default_factory=EmailConfig)
    sms: SMSConfig = Field(default_factory=SMSConfig)
    timeout: float = 10.0


class PaymentsConfig(BaseModel):
    stripe_secret_key: Optional[str] = None
    base_url: str = "https://api.stripe.com"
    timeout: float = 10.0
    max_attempts: int = 4
    retry_delay_ms: int = 250
    max_retry_delay_ms: int = 4000


class ExecutorConfig(BaseModel):
    url: Optional[str] = None
    secret: Optional[str] = None
    timeout: float = 10.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "campreg.log"


class Config(BaseModel):
    """Main configuration class"""
    app: AppConfig = Field(default_factory=AppConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    window: WindowConfig = Field(default_factory=WindowConfig)
    challenge: ChallengeConfig = Field(default_factory=ChallengeConfig)
    checkpoints: CheckpointConfig = Field(default_factory=CheckpointConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    payments: PaymentsConfig = Field(default_factory=PaymentsConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from YAML file"""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables"""
        sms_token = os.environ.get("CAMPREG_TWILIO_AUTH_TOKEN")
        return cls(
            app=AppConfig(
                base_url=os.environ.get("CAMPREG_BASE_URL", "http://localhost:8000"),
                callback_secret=os.environ["CAMPREG_CALLBACK_SECRET"],
                link_signing_secret=os.environ["CAMPREG_LINK_SECRET"],
            ),
            storage=StorageConfig(
                state_file=os.environ.get("CAMPREG_STATE_FILE", "state/campreg.json"),
            ),
            notifications=NotificationsConfig(
                email=EmailConfig(
                    enabled="CAMPREG_SENDGRID_API_KEY" in os.environ,
                    sendgrid_api_key=os.environ.get("CAMPREG_SENDGRID_API_KEY"),
                ),
                sms=SMSConfig(
                    enabled=sms_token is not None,
                    twilio_account_sid=os.environ.get("CAMPREG_TWILIO_ACCOUNT_SID"),
                    twilio_auth_token=sms_token,
                    twilio_from_number=os.environ.get("CAMPREG_TWILIO_FROM_NUMBER"),
                ),
            ),
            payments=PaymentsConfig(
                stripe_secret_key=os.environ.get("CAMPREG_STRIPE_SECRET_KEY"),
            ),
            executor=ExecutorConfig(
                url=os.environ.get("CAMPREG_EXECUTOR_URL"),
                secret=os.environ.get("CAMPREG_EXECUTOR_SECRET"),
            ),
        )

    def to_yaml(self, path: str | Path):
        """Save configuration to YAML file"""
        path = Path(path)
        with open(path, 'w') as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False)

    def require_secrets(self):
        """Fail fast when the HTTP surface would run without its secrets"""
        missing = []
        if not self.app.callback_secret:
            missing.append("app.callback_secret")
        if not self.app.link_signing_secret:
            missing.append("app.link_signing_secret")
        if self.notifications.sms.enabled and not self.notifications.sms.twilio_auth_token:
            missing.append("notifications.sms.twilio_auth_token")
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from file or environment"""
    if path:
        return Config.from_yaml(path)

    # Try default locations
    default_paths = [
        Path("config/config.yaml"),
        Path("config.yaml"),
        Path.home() / ".campreg" / "config.yaml",
    ]

    for p in default_paths:
        if p.exists():
            return Config.from_yaml(p)

    # Fall back to environment variables
    try:
        return Config.from_env()
    except KeyError as e:
        raise ConfigurationError(
            f"No config file found and missing environment variable: {e}. "
            f"Create config/config.yaml or set CAMPREG_* environment variables."
        )
