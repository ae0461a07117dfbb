from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Google endpoints
    google_token_url: str = "https://oauth2.googleapis.com/token"
    bigquery_api_base: str = "https://bigquery.googleapis.com/bigquery/v2"
    metadata_token_url: str = (
        "http://metadata.google.internal/computeMetadata/v1/instance/service-accounts/default/token"
    )
    metadata_project_url: str = "http://metadata.google.internal/computeMetadata/v1/project/project-id"
    bigquery_scopes: str = "https://www.googleapis.com/auth/bigquery"

    # ADC
    access_token_skew_seconds: int = 60
    metadata_timeout_seconds: float = 2.0
    gcloud_binary: str = "gcloud"
    gcloud_token_ttl_seconds: int = 45 * 60

    # Queries
    query_timeout_ms: int = 1000
    default_max_results: int = 1000
    max_results_cap: int = 5000
    export_page_size: int = 10000
    poll_interval_seconds: float = 0.5
    max_poll_waits: int = 180
    bigquery_export_max_rows: int = 250000
    project_list_max_pages: int = 100

    # App
    allowed_origins: str = "http://localhost:3000"
    rate_limit_per_hour: int = 120
    log_level: str = "INFO"
    log_json: bool = False

    @property
    def scopes_list(self) -> list[str]:
        return [s for s in self.bigquery_scopes.split() if s]

    @property
    def origins_list(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",")]

    class Config:
        env_file = ".env"


settings = Settings()
