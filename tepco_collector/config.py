"""Configuration management for the TEPCO Collector service."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional
from pathlib import Path
import os


class ConfigurationError(Exception):
    """Required configuration is missing or invalid."""
    pass


SECRETS_LOCATIONS = (
    Path("/app/.secrets"),  # Docker container path
    Path.home() / ".secrets",
)


def _parse_secret_line(line: str) -> Optional[tuple]:
    """Split one `KEY=value` line, accepting shell-style `export` and quoting.

    Returns None for blank lines, comments and lines without `=`.
    """
    line = line.strip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    if line.startswith("export "):
        line = line[len("export "):]

    key, value = (part.strip() for part in line.split("=", 1))
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def load_secrets_file(secrets_path: str = ".secrets") -> dict:
    """Read TEPCO login secrets kept out of .env.

    The first file found among secrets_path, /app/.secrets and ~/.secrets
    wins. Lines may be written as they would be sourced from a shell, e.g.
    `export TEPCO_PASSWORD="p@ss word"`.
    """
    for path in (Path(secrets_path), *SECRETS_LOCATIONS):
        if not path.is_file():
            continue
        secrets = {}
        for line in path.read_text(encoding="utf-8").splitlines():
            parsed = _parse_secret_line(line)
            if parsed:
                secrets[parsed[0]] = parsed[1]
        return secrets

    return {}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # SQLite database
    db_path: str = Field(default="./data/tepco.db", alias="DB_PATH")

    # TEPCO account - loaded from .secrets file
    tepco_username: Optional[str] = Field(default=None, alias="TEPCO_USERNAME")
    tepco_password: Optional[str] = Field(default=None, alias="TEPCO_PASSWORD")

    # TEPCO contract identifiers (shown on the Kurashi TEPCO contract page)
    tepco_contract_num: str = Field(default="", alias="TEPCO_CONTRACT_NUM")
    tepco_account_id: str = Field(default="", alias="TEPCO_ACCOUNT_ID")
    tepco_contract_class: str = Field(default="02", alias="TEPCO_CONTRACT_CLASS")

    # TEPCO endpoints
    tepco_api_base: str = Field(default="https://kcx-api.tepco-z.com", alias="TEPCO_API_BASE")
    tepco_login_url: str = Field(default="https://epauth.tepco.co.jp/u/login", alias="TEPCO_LOGIN_URL")
    tepco_top_url: str = Field(default="https://www.tepco.co.jp", alias="TEPCO_TOP_URL")
    tepco_request_timeout: float = Field(default=30.0, alias="TEPCO_REQUEST_TIMEOUT")

    # Browser login
    # Headed by default, TEPCO's login page is less likely to block a visible browser
    browser_headless: bool = Field(default=False, alias="BROWSER_HEADLESS")
    browser_navigation_timeout_ms: int = Field(default=30000, alias="BROWSER_NAVIGATION_TIMEOUT_MS")
    browser_token_wait_s: float = Field(default=10.0, alias="BROWSER_TOKEN_WAIT_S")

    # TEPCO does not advertise a token lifetime, tokens are kept for this long
    token_lifetime_hours: int = Field(default=24, alias="TOKEN_LIFETIME_HOURS")

    # Scheduler (crontab syntax, evaluated in TZ)
    scheduler_enabled: bool = Field(default=False, alias="ENABLE_SCHEDULER")
    daily_collection_cron: str = Field(default="0 1 * * *", alias="DAILY_COLLECTION_CRON")
    token_check_cron: str = Field(default="0 */6 * * *", alias="TOKEN_CHECK_CRON")
    reconciliation_cron: str = Field(default="0 2 * * sun", alias="RECONCILIATION_CRON")
    log_retention_cron: str = Field(default="0 3 1 * *", alias="LOG_RETENTION_CRON")
    reconciliation_window_days: int = Field(default=30, alias="RECONCILIATION_WINDOW_DAYS")

    # Collection log retention
    # Disabled by default: the monthly job only reports what it would delete
    log_retention_days: int = Field(default=90, alias="LOG_RETENTION_DAYS")
    log_retention_enabled: bool = Field(default=False, alias="LOG_RETENTION_ENABLED")

    # API
    api_title: str = "TEPCO Usage API"
    api_version: str = "1.0.0"

    # Timezone
    tz: str = Field(default="Asia/Tokyo", alias="TZ")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def credentials_configured(self) -> bool:
        """Check if both TEPCO username and password are set."""
        return bool(self.tepco_username and self.tepco_password)

    def require_contract(self):
        """Ensure the contract identifiers needed by the usage API are set.

        Raises:
            ConfigurationError: If contract number or account ID is missing
        """
        missing = []
        if not self.tepco_contract_num:
            missing.append("TEPCO_CONTRACT_NUM")
        if not self.tepco_account_id:
            missing.append("TEPCO_ACCOUNT_ID")
        if missing:
            raise ConfigurationError(f"Missing TEPCO contract settings: {', '.join(missing)}")


def create_settings() -> Settings:
    """Create settings instance, loading secrets from .secrets file."""
    secrets = load_secrets_file()

    # Secrets file is authoritative for sensitive values
    for key, value in secrets.items():
        if key.startswith("TEPCO_") or key.endswith("_TOKEN") or key.endswith("_PASSWORD"):
            os.environ[key] = value

    return Settings()


# Global settings instance
settings = create_settings()
