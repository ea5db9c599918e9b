from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str
    supabase_service_role_key: str
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    resend_api_key: str | None = None
    resend_api_base: str = "https://api.resend.com"
    resend_webhook_signing_secret: str | None = None
    resend_webhook_tolerance_seconds: int = 300
    resend_from_email: str = "alerts@example.com"
    resend_min_interval_seconds: float = 0.6
    chat_forward_email: str | None = None
    servicetitan_client_id: str | None = None
    servicetitan_client_secret: str | None = None
    servicetitan_app_key: str | None = None
    servicetitan_tenant_id: str | None = None
    servicetitan_api_base: str = "https://api.servicetitan.io"
    servicetitan_auth_url: str = "https://auth.servicetitan.io/connect/token"
    servicetitan_min_interval_seconds: float = 0.25
    crm_timezone: str = "America/Chicago"
    default_acquisition_channel: str = "website"
    default_service_city: str = "Austin"
    default_service_state: str = "TX"
    default_service_zip: str = "78701"
    fulfillment_pending_wait_seconds: float = 2.0
    upstream_max_retries: int = 3
    attachment_max_bytes: int = 25 * 1024 * 1024
    attachment_total_max_bytes: int = 100 * 1024 * 1024
    internal_scheduler_secret: str | None = None
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
