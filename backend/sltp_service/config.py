from typing import Dict, List

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite+aiosqlite:///./sltp.db"
    database_echo: bool = False
    sqlite_busy_timeout_ms: int = 5000

    # Credential encryption
    # ENCRYPTION_KEYS="1:<fernet key>,2:<fernet key>" enables key rotation.
    # ENCRYPTION_KEY alone is treated as version 1.
    encryption_keys: str = ""
    encryption_key: str = ""
    active_encryption_key_version: int = 0  # 0 = highest configured version

    # Inbound SLTP triggers
    sltp_webhook_secret: str = ""
    sltp_verify_secret: bool = True
    trigger_dedup_cooldown_seconds: int = 1800  # 30 minutes, 0 disables
    max_concurrent_dispatches: int = 8
    dispatch_timeout_seconds: float = 20.0
    entry_warmup_seconds: int = 1800  # Skip exits on positions opened less than 30 min ago, 0 disables
    credential_quarantine_threshold: int = 3  # Consecutive dispatch failures before quarantine
    credential_quarantine_seconds: float = 300.0
    default_exchange: str = "binance"
    paper_trading: bool = True  # Simulated order gateway for every exchange

    # Outbound orchestrator webhooks
    orchestrator_scheme: str = "http"
    orchestrator_host: str = "localhost"
    orchestrator_port: int = 5006
    webhook_secret: str = "change_me_in_production"
    webhook_timeout_seconds: float = 5.0
    webhook_max_retries: int = 3
    webhook_backoff_base_seconds: float = 1.0

    # Misc
    log_level: str = "INFO"
    cors_origins: str = ""

    @field_validator("default_exchange")
    @classmethod
    def lowercase_exchange(cls, v: str) -> str:
        return v.strip().lower()

    def get_encryption_keys(self) -> Dict[int, str]:
        """Parse the configured key ring into {version: key}."""
        keys: Dict[int, str] = {}
        if self.encryption_keys:
            for entry in self.encryption_keys.split(","):
                entry = entry.strip()
                if not entry:
                    continue
                version, sep, key = entry.partition(":")
                if not sep or not version.strip().isdigit():
                    raise ValueError(f"Malformed ENCRYPTION_KEYS entry for version '{version}'")
                keys[int(version)] = key.strip()
        elif self.encryption_key:
            keys[1] = self.encryption_key
        return keys

    def get_orchestrator_url(self) -> str:
        return f"{self.orchestrator_scheme}://{self.orchestrator_host}:{self.orchestrator_port}"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
