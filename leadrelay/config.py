from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./leadrelay.db"
    log_level: str = "INFO"

    # Identity of the number this instance sends from (digits only)
    bot_number: str = ""

    # Outbound channel (Evolution-style HTTP API)
    channel_api_url: str = "http://localhost:8080"
    channel_api_key: str = ""
    channel_instance: str = "leadrelay"
    send_timeout_seconds: float = 10.0

    # Ingress dedup
    dedup_window_seconds: float = 60.0
    dedup_max_entries: int = 10000
    dedup_evict_fraction: float = 0.2

    # Verification handshake
    verification_max_attempts: int = 2
    verification_timeout_seconds: float = 60.0

    # Classifier weights and thresholds
    weight_frequency: float = 0.10
    weight_latency: float = 0.35
    weight_entropy: float = 0.10
    weight_content: float = 0.35
    weight_carryover: float = 0.10
    low_threshold: float = 0.30
    high_threshold: float = 0.75

    frequency_window_seconds: float = 10.0
    frequency_limit: int = 5
    latency_instant_seconds: float = 1.0
    latency_human_seconds: float = 5.0
    history_size: int = 10
    entropy_reference_bits: float = 4.0
    carryover_half_life_seconds: float = 1800.0

    score_inactivity_seconds: float = 3600.0
    score_max_entries: int = 10000
    score_evict_fraction: float = 0.2

    outbound_timestamp_ttl_seconds: float = 3600.0
    outbound_timestamp_max_entries: int = 10000
    outbound_timestamp_evict_fraction: float = 0.2

    # Outbound delivery
    delivery_max_attempts: int = 3
    delivery_backoff_base_seconds: float = 1.0
    delivery_duplicate_window_seconds: float = 300.0
    delivery_sent_max_entries: int = 5000
    delivery_sent_evict_fraction: float = 0.2
    delivery_inflight_max_entries: int = 500
    delivery_inflight_evict_fraction: float = 0.5

    # Router
    engine_idle_seconds: float = 1800.0
    engine_max_entries: int = 1000
    engine_evict_fraction: float = 0.2
    handoff_history_limit: int = 10

    sweep_interval_seconds: float = 60.0

    fallback_reply: str = "Sorry, something went wrong on our side. Could you send that again?"
    challenge_reply: str = (
        "Before we continue, please confirm you are a real person by replying \"I am human\"."
    )
    reprompt_reply: str = "Sorry, I didn't catch that. Please reply \"I am human\" so we can continue."
    verified_reply: str = "Thanks for confirming! How can we help you today?"

    alert_bot_token: str | None = None
    alert_chat_id: str | None = None

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
