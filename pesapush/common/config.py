"""Central environment-driven settings for the gateway, orchestrator and CLI.

Loaded once per process; tests and scripts may build their own instance and
inject it (see `.env.example` for the variable names).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


PESAPAL_BASE_URLS: dict[str, str] = {
    "sandbox": "https://cybqa.pesapal.com/v3",
    "production": "https://pay.pesapal.com/v3",
}


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "pesapush-gateway"
    log_level: str = "INFO"
    pesapal_environment: str = "sandbox"
    pesapal_base_url: str = ""
    pesapal_consumer_key: str = ""
    pesapal_consumer_secret: str = ""
    pesapal_iframe_url: str = "https://pay.pesapal.com/iframe/PesapalIframe3/Index"
    pesapal_ipn_url: str = "http://localhost:8000/api/ipn"
    pesapal_callback_url: str = ""
    pesapal_branch: str = ""
    currency: str = "KES"
    country_code: str = "KE"
    order_id_prefix: str = "pesapush"
    http_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 5.0
    max_status_polls: int = 60
    cors_allow_origin: str = "*"
    otel_exporter_otlp_endpoint: str = ""
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def provider_base_url(self) -> str:
        """Explicit override wins; otherwise pick by environment name."""

        if self.pesapal_base_url:
            return self.pesapal_base_url.rstrip("/")
        try:
            return PESAPAL_BASE_URLS[self.pesapal_environment.lower()]
        except KeyError:
            raise ValueError(f"unknown pesapal_environment: {self.pesapal_environment}") from None


settings = CommonSettings()
