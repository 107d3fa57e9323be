from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "lead-harvester"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_auto_migrate: bool = False
    max_concurrent_jobs: int = 2
    queue_cooldown_seconds: float = 1.0
    data_dir: str = "/tmp/lead-harvester"
    cleanup_temp: bool = False
    scraper_image: str = "scraper-image:latest"
    scraper_volume_name: str | None = None
    scraper_docker_bin: str = "docker"
    scraper_memory: str = "1024m"
    scraper_cpus: str = "1.0"
    scraper_shm_size: str = "1g"
    scraper_timeout_seconds: float = 3600.0
    default_max_results: int = 70
    places_base_url: str = "https://places.googleapis.com/v1"
    places_timeout_seconds: float = 30.0
    places_page_size: int = 20
    quota_timezone: str = "UTC"
    scheduler_timezone: str = "UTC"
    max_one_time_delay_seconds: float = 2147483.647
    otel_enabled: bool = True
    otel_service_name: str = "lead-harvester"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="HARVESTER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
