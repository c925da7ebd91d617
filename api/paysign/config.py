from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # ─────────── APP ───────────
    app_name: str = "PaySign"
    environment: str = "dev"
    log_level: str = "INFO"
    frontend_url: str = "http://localhost:3000"
    api_base_url: str = "http://localhost:4000"
    request_id_header: str = "X-Request-Id"

    # ─────────── DATABASE ───────────
    database_url: str = "sqlite:///./paysign.db"

    # ─────────── STORAGE ───────────
    minio_endpoint: str = "minio:9000"
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_bucket: str = "signing"
    minio_secure: bool = False

    # ─────────── TOKENS ───────────
    secret_key: str = "devsecret"
    admin_token: str = ""

    # ─────────── PAYMENT (x402) ───────────
    facilitator_url: str = "https://x402-navy.vercel.app/facilitator"
    facilitator_timeout_seconds: float = 30.0
    payment_recipient_address: str = ""
    signature_price_usdc: float = 1.0
    usdc_asset_address: str = "0x69091fbab5f7d635ee7ac5098cf0c1efbe31d68fec0f2cd565e8d168daf52832"
    aptos_network: str = "testnet"
    payment_timeout_seconds: int = 300

    # ─────────── IDENTITY ───────────
    identity_indexer_url: str = "https://api.testnet.aptoslabs.com/v1/graphql"
    identity_collection_address: str = ""
    identity_timeout_seconds: float = 10.0

    @property
    def payment_network(self) -> str:
        # aptos:2 = testnet, aptos:1 = mainnet
        return "aptos:2" if self.aptos_network == "testnet" else "aptos:1"

    @property
    def price_atomic(self) -> str:
        return str(int(round(self.signature_price_usdc * 1_000_000)))


def validate_settings(settings: Settings) -> None:
    missing = []
    if settings.environment == "production" and not settings.payment_recipient_address:
        missing.append("PAYMENT_RECIPIENT_ADDRESS")
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
