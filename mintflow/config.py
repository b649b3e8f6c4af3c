from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Capture
    sample_rate: int = 16000
    channels: int = 1
    max_capture_seconds: int = 300

    # Content-addressed storage (Pinata-compatible pinning API)
    storage_api_url: str = "https://api.pinata.cloud"
    storage_api_key: str = ""
    storage_secret_key: str = ""
    storage_gateway_url: str = "https://gateway.pinata.cloud/ipfs/"
    fallback_gateways: list[str] = [
        "https://ipfs.io/ipfs/",
        "https://gateway.pinata.cloud/ipfs/",
        "https://cloudflare-ipfs.com/ipfs/",
    ]
    upload_timeout_seconds: float = 120.0
    gateway_timeout_seconds: float = 10.0
    max_upload_bytes: int = 100 * 1024 * 1024

    # Ledger indexer (Etherscan v2 compatible)
    indexer_url: str = "https://api.etherscan.io/v2/api"
    indexer_api_key: str = ""
    chain_id: int = 8453
    contract_address: str = "0x0000000000000000000000000000000000000000"
    indexer_timeout_seconds: float = 10.0
    indexer_min_interval_ms: int = 1000

    # Signer relay
    signer_url: str = "http://127.0.0.1:8545/sign"
    signer_timeout_seconds: float = 30.0

    # Confirmation polling
    required_confirmations: int = 1
    confirmation_max_attempts: int = 8
    confirmation_base_delay_ms: int = 3000
    confirmation_max_delay_ms: int = 30000

    # Rate-limited reads
    rate_limit_delays_ms: list[int] = [2000, 4000, 6000]
    rate_limit_max_retries: int = 3

    # Access cache
    access_freshness_hours: float = 6.0
    access_prune_days: int = 30

    # Groq
    groq_api_key: str = "gsk_placeholder"
    default_model: str = "llama-3.3-70b-versatile"
    transcription_model: str = "whisper-large-v3"

    # Storage
    db_path: str = "mintflow.db"

    # Logging
    log_level: str = "info"
    log_json: bool = False

    # Server
    host: str = "127.0.0.1"
    port: int = 8000

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
