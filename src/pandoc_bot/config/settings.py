from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    app_env: str = "local"
    app_log_level: str = "INFO"
    base_url: str = "http://localhost:8000"

    # Twilio
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_whatsapp_from: str | None = None

    # Twilio – inbound webhook behavior
    twilio_validate_signature: bool = True

    # Media staging (inbound uploads + outbound documents)
    #
    # IMPORTANT: Twilio requires a publicly reachable HTTPS URL for media delivery.
    # In local dev, you typically set `MEDIA_PUBLIC_BASE_URL` to your ngrok URL.
    media_root_dir: str = "./data/media"
    media_public_base_url: str = Field(
        default="",
        validation_alias=AliasChoices("MEDIA_PUBLIC_BASE_URL", "media_public_base_url"),
    )
    max_file_bytes: int = 20 * 1024 * 1024
    # Outbound documents only need to outlive Twilio's media fetch.
    outbox_ttl_seconds: int = 3600

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0

    # Redis Streams (conversion queues)
    redis_stream_jobs: str = "conversion_jobs"
    redis_stream_results: str = "conversion_results"
    redis_stream_dead_letter: str = "conversion_results_dead"

    # Result consumer
    redis_results_consumer_group: str = "result_routers"
    redis_results_consumer_name: str = "router-1"
    result_consume_block_ms: int = 5000
    result_claim_idle_ms: int = 60_000
    result_max_decode_attempts: int = 3
    queue_reconnect_backoff_seconds: float = 1.0
    # Floor between empty reads when result_consume_block_ms is 0 (non-blocking reads).
    queue_idle_poll_seconds: float = 0.2

    # Dialogue state
    state_hash_key: str = "dialogue:state"

    # Dialogue formats (canonical lower-case tags)
    from_formats: list[str] = ["markdown", "asciidoc"]
    to_formats: list[str] = ["pdf", "latex"]


settings = Settings()
