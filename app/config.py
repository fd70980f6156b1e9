# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Database
    expected_schema_version: str = "002_dispatch_guards.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Security
    admin_token: str | None = None
    allowed_origins: list[str] = ["*"]
    require_webhook_validation: bool = True
    enable_request_logging: bool = True
    rate_limit_per_minute: int = 120           # Public callbacks (push receipts, actions) per client IP
    inbound_sms_rate_limit_per_minute: int = 20  # Inbound replies per sender number

    # Twilio (SMS gateway)
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_phone_number: str | None = None
    twilio_webhook_url: str | None = None  # Public URL for signature validation (e.g., https://api.example.com/webhooks/twilio/sms)

    # Google Distance Matrix
    google_maps_api_key: str | None = None
    distance_matrix_url: str = "https://maps.googleapis.com/maps/api/distancematrix/json"

    # APNs (iOS push)
    apns_key_id: str | None = None
    apns_team_id: str | None = None
    apns_bundle_id: str | None = None
    apns_private_key: str | None = None       # PEM contents of the .p8 key
    apns_private_key_path: str | None = None  # Alternative: path to the .p8 file
    apns_use_sandbox: bool = True

    # FCM HTTP v1 (Android push)
    fcm_project_id: str | None = None
    fcm_service_account_json: str | None = None       # Raw service account JSON
    fcm_service_account_path: str | None = None       # Alternative: path to the JSON file

    # Dispatch constants (deployment-wide, not per call)
    dispatch_batch_size: int = 5
    dispatch_batch_delay_seconds: int = 120
    push_fallback_delay_seconds: int = 30
    distance_threshold_meters: int = 50_000
    distance_matrix_batch_size: int = 25
    dispatch_claim_ttl_seconds: int = 900  # A (job, contact) invite claim blocks other campaigns this long

    # Monitoring & Metrics
    enable_metrics: bool = True

    # Task Worker (DB-backed delayed task queue)
    task_worker_enabled: bool = True           # Run batch continuations and fallback checks in-process
    task_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    task_worker_batch_size: int = 5            # Tasks claimed per poll cycle
    task_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    task_worker_stale_timeout: int = 300       # Reset tasks stuck 'running' for this long (seconds)
    task_cleanup_completed_ttl_days: int = 7   # Delete completed tasks older than N days
    task_cleanup_failed_ttl_days: int = 30     # Delete failed tasks older than N days

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def twilio_enabled(self) -> bool:
        """Check if the Twilio SMS gateway is configured"""
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_phone_number
        )

    @property
    def apns_enabled(self) -> bool:
        """Check if APNs credentials are present"""
        return bool(
            self.apns_key_id
            and self.apns_team_id
            and self.apns_bundle_id
            and (self.apns_private_key or self.apns_private_key_path)
        )

    @property
    def fcm_enabled(self) -> bool:
        """Check if FCM credentials are present"""
        return bool(
            self.fcm_project_id
            and (self.fcm_service_account_json or self.fcm_service_account_path)
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("admin_token", self.admin_token),
            ("twilio_auth_token", self.twilio_auth_token),
            ("twilio_account_sid", self.twilio_account_sid),
            ("twilio_phone_number", self.twilio_phone_number),
        ]

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Admin / Security ---
    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if not s.admin_token:
        warnings.append("admin_token is not set (credit and campaign admin endpoints are open).")

    # --- SMS gateway ---
    if not s.twilio_enabled:
        warnings.append("Twilio is not configured: SMS sends run in dev mode (logged, not delivered).")
    if s.require_webhook_validation and not s.twilio_webhook_url:
        warnings.append("twilio: require_webhook_validation=True but twilio_webhook_url is not set.")

    # --- Push providers ---
    if not s.apns_enabled and not s.fcm_enabled:
        warnings.append("No push provider configured: every invitation goes out as SMS.")

    # --- Ranking ---
    if not s.google_maps_api_key:
        warnings.append("google_maps_api_key is not set: ranking falls back to text location matching.")

    # --- Task worker ---
    if s.run_mode in ("all", "worker") and not s.task_worker_enabled:
        warnings.append(
            "task_worker_enabled=False: queued dispatch batches and push fallback checks will not run."
        )

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
