# backend/repairflow/config.py
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ---- App ----
    app_env: str = "local"  # local|dev|prod
    app_version: str = "2026-10-19.v1"
    database_url: str = "sqlite:///./repairflow.db"

    # ---- CORS (used by main.py) ----
    cors_allow_origins: list[str] | str = ["*"]

    # ---- Logging ----
    log_level: str = "INFO"
    log_format: str = "json"  # json|text
    sql_log_level: str = "WARNING"
    # per-logger overrides, e.g. LOG_LEVELS='{"repairflow.escalation": "DEBUG"}'
    log_levels: dict[str, str] = {}

    # ---- Auth ----
    auth_mode: str = "dev"  # dev|jwt
    dev_auto_provision: bool = True
    jwt_secret: str = "dev-change-me"

    # ---- Policy defaults (used when a property has no policy row) ----
    default_payment_responsibility: str = "landlord"
    default_approval_mode: str = "over_amount"
    default_auto_approval_limit: float = 250.0
    default_split_ceiling: float = 0.0
    default_emergency_auto_approve: bool = True
    default_bid_window_hours: int = 72

    # ---- Emergency escalation ----
    # Response SLA per emergency type, minutes. Rules may override per level.
    sla_safety_minutes: int = 10
    sla_security_minutes: int = 10
    sla_water_minutes: int = 15
    sla_electrical_minutes: int = 20
    sla_structural_minutes: int = 30
    sla_hvac_minutes: int = 60

    escalation_sweep_seconds: int = 30
    escalation_require_level1_rule: bool = False
    escalation_auto_dispatch_first_responder: bool = False
    escalation_lock_ttl_seconds: int = 120

    # ---- Reliability ledger ----
    reliability_no_show_weight: float = 40.0
    reliability_rating_weight: float = 5.0

    # ---- Notifications ----
    notification_webhook_url: str | None = None
    notification_timeout_seconds: float = 10.0
    notification_max_attempts: int = 5
    notification_batch_size: int = 100

    # ---- Celery ----
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None

    def sla_minutes(self, emergency_type: str | None) -> int:
        key = f"sla_{(emergency_type or 'safety').strip().lower()}_minutes"
        return int(getattr(self, key, self.sla_safety_minutes))

    def model_post_init(self, __context) -> None:
        env = (self.app_env or "local").strip().lower()
        is_prod = env in ("prod", "production")

        # Hard fail: prod must not accept spoofed identity headers
        if is_prod:
            if (self.auth_mode or "").strip().lower() == "dev":
                raise ValueError("SECURITY: auth_mode=dev is not allowed in prod")

            origins = self.cors_allow_origins
            if origins == "*" or origins == ["*"] or (isinstance(origins, str) and "*" in origins):
                raise ValueError("SECURITY: cors_allow_origins wildcard is not allowed in prod")

        if self.escalation_sweep_seconds <= 0:
            raise ValueError("escalation_sweep_seconds must be positive")


settings = Settings()
