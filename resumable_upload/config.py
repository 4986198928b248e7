from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "resumable-upload-service"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    database_url: str = "sqlite:///./resumable_upload.db"
    auto_create_schema: bool = True
    storage_backend: str = "local"
    storage_root: str = "./data"
    completed_root: str = "./data/completed"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    r2_bucket: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    tracing_enabled: bool = False
    tracing_service_name: str = "resumable-upload-service"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    max_chunk_size_bytes: int = 100 * 1024 * 1024
    max_active_sessions: int = 1000
    max_inflight_chunks_per_session: int = 8
    merge_block_size_bytes: int = 1024 * 1024
    merge_lock_timeout_seconds: int = 3600
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 3600
    session_ttl_seconds: int = 86400


class ClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="UPLOAD_CLIENT_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    base_url: str = "http://127.0.0.1:8000"
    chunk_size_bytes: int = 5 * 1024 * 1024
    concurrency: int = 3
    max_retries: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    request_timeout_seconds: float = 60.0


settings = Settings()
client_settings = ClientSettings()
