from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "second-brain-api"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    public_base_url: str = "http://localhost:8000"
    database_url: str = "sqlite:///./second_brain.db"
    auto_create_schema: bool = True
    scratch_root: str = "./data/scratch"
    blob_backend: str = "local"
    blob_root: str = "./data/blobs"
    blob_public_read: bool = True
    blob_public_base_url: str = ""
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    r2_bucket: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    max_direct_upload_bytes: int = 50 * 1024 * 1024
    page_size: int = 20
    auth_mode: str = "api_key"
    api_key_mappings: str = "dev-key:dev-user"
    admin_user_ids: str = "dev-user"
    api_rate_limit_per_minute: int = 0
    auth_cookie_name: str = "access_token"
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""
    jwt_issuer: str = ""
    tracing_enabled: bool = False
    tracing_service_name: str = "second-brain-api"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 900
    stale_upload_ttl_seconds: int = 86400
    link_metadata_timeout_seconds: float = 10.0


settings = Settings()
