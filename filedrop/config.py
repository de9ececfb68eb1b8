from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "filedrop"
    app_version: str = "dev"
    host: str = "::"
    port: int = 8080
    storage_root: str = "./nas_files"
    slot_suffix: str = ".tmp"
    copy_buffer_bytes: int = 64 * 1024
    max_chunk_bytes: int = 64 * 1024 * 1024
    max_total_chunks: int = 100_000
    total_conflict_policy: str = "adopt_first"
    tracing_enabled: bool = False
    tracing_service_name: str = "filedrop"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    worker_count: int = 16
    task_queue_maxsize: int = 512
    max_global_inflight_chunks: int = 128
    cleanup_enabled: bool = False
    cleanup_on_startup: bool = True
    cleanup_interval_seconds: int = 900
    stale_assembly_ttl_seconds: int = 86400
    stale_slot_ttl_seconds: int = 86400


settings = Settings()
