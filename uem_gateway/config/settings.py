from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class GatewayConfig:
    """Per-deployment knobs of the AI gateway that admins may override at runtime."""

    max_daily_cost: float = 1000.0
    rate_limit_requests: int = 100
    rate_limit_window_minutes: int = 60
    cache_ttl_minutes: int = 30
    content_filtering_enabled: bool = True
    audit_logging_enabled: bool = True


def _parse_amount_map(raw: str) -> dict[str, float]:
    result: dict[str, float] = {}
    for item in raw.split(","):
        item = item.strip()
        if ":" not in item:
            continue
        scope_id, amount_str = item.split(":", 1)
        try:
            normalized_id = scope_id.strip()
            normalized_amount = float(amount_str.strip())
        except ValueError:
            continue
        if not normalized_id or normalized_amount <= 0:
            continue
        result[normalized_id] = normalized_amount
    return result


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="UEMGW_", case_sensitive=False)

    env: str = "dev"
    log_level: str = "INFO"
    api_keys: str = Field(default="dev-key", description="Comma separated API keys")
    admin_api_keys: str = Field(default="", description="Comma separated admin API keys")

    # Model provider
    default_model: str = "gpt-4o"
    provider_name: str = "stub"
    provider_base_url: str = "https://api.openai.com"
    provider_api_key: str | None = None
    model_timeout_s: float = 60.0

    # Gateway configuration surface
    max_daily_cost: float = 1000.0
    rate_limit_requests: int = 100
    rate_limit_window_minutes: int = 60
    cache_ttl_minutes: int = 30
    cache_key_length: int = 32
    content_filtering_enabled: bool = True
    audit_logging_enabled: bool = True

    # Budget enforcement
    budget_tenant_overrides: str = ""
    budget_domain_overrides: str = ""
    budget_strict_enforcement: bool = False

    # Rate limiting backend
    rate_limit_backend: str = "memory"
    rate_limit_redis_url: str | None = None
    rate_limit_redis_prefix: str = "uemgw:rate"

    # Storage collaborator
    storage_backend: str = "memory"
    storage_sqlite_path: Path = Path("artifacts/storage/gateway.db")

    # Best-effort side calls
    enrichment_timeout_s: float = 2.0
    audit_timeout_s: float = 2.0

    audit_log_path: Path | None = Path("artifacts/audit/usage.jsonl")
    contracts_dir: Path = Path(__file__).resolve().parents[2] / "docs" / "contracts" / "v1"
    metrics_enabled: bool = True

    @property
    def api_key_set(self) -> set[str]:
        return {item.strip() for item in self.api_keys.split(",") if item.strip()}

    @property
    def admin_api_key_set(self) -> set[str]:
        return {item.strip() for item in self.admin_api_keys.split(",") if item.strip()}

    @property
    def budget_tenant_override_map(self) -> dict[str, float]:
        """Parse ``tenant:amount,tenant:amount`` into a dict."""
        return _parse_amount_map(self.budget_tenant_overrides)

    @property
    def budget_domain_override_map(self) -> dict[str, float]:
        """Parse ``domain:amount,domain:amount`` into a dict."""
        return _parse_amount_map(self.budget_domain_overrides)

    @property
    def rate_limit_backend_normalized(self) -> str:
        return self.rate_limit_backend.strip().lower()

    @property
    def storage_backend_normalized(self) -> str:
        return self.storage_backend.strip().lower()

    @property
    def provider_name_normalized(self) -> str:
        return self.provider_name.strip().lower()

    def gateway_config(self) -> GatewayConfig:
        return GatewayConfig(
            max_daily_cost=self.max_daily_cost,
            rate_limit_requests=self.rate_limit_requests,
            rate_limit_window_minutes=self.rate_limit_window_minutes,
            cache_ttl_minutes=self.cache_ttl_minutes,
            content_filtering_enabled=self.content_filtering_enabled,
            audit_logging_enabled=self.audit_logging_enabled,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
