from pathlib import Path
from typing import Any, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    paygate_data_dir: Path = Path("./data")
    paygate_env: str = "development"

    # Signature strategy used for newly issued challenges
    x402_signature_strategy: Literal["legacy", "enhanced-hmac", "jws"] = "enhanced-hmac"
    x402_legacy_enabled: bool = False  # accept v1= tokens at verification time
    x402_hmac_secret: str | None = None
    # JSON in env: X402_HMAC_KEYS='{"prod-2025-02-01": "..."}'
    x402_hmac_keys: dict[str, str] = {}
    x402_current_key_id: str | None = None
    x402_max_keys: int = 5
    # JSON in env: {"kid": {"private": "<PEM>", "public": "<PEM>", "algorithm": "RS256"}}
    x402_jws_keys: dict[str, dict[str, Any]] = {}
    x402_jws_keys_dir: Path | None = None
    x402_jws_current_kid: str | None = None
    x402_max_jws_keys: int = 5
    x402_jws_issuer: str = "paygate-api"
    x402_jws_audience: str = "paygate-client"

    # Replay window and clock skew shared by the timestamped strategies
    signature_max_age_seconds: int = 300
    signature_future_skew_seconds: int = 60

    # Order lifecycle
    order_ttl_seconds: int = 300
    order_retention_seconds: int = 3600
    order_sweep_interval_seconds: int = 300

    # What must be paid
    payment_scheme: str = "exact"
    payment_chain_id: str = "eip155:84532"  # Base Sepolia
    payment_token_address: str = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"  # USDC on Base Sepolia
    payment_token_decimals: int = 6
    payment_currency: str = "USDC"
    payment_recipient: str = "0x1c7d4b196cb0c7b01d743fbc6116a902379c7238"
    payment_min_confirmations: int = 0
    payment_callback_url: str | None = None

    rpc_url: str = "https://sepolia.base.org"
    rpc_timeout_seconds: float = 10.0

    # Default pricing collaborator
    device_prices: dict[str, str] = {"ESP32_001": "0.01", "ESP32_002": "0.005"}
    default_price: str = "0.01"
    peak_hours: tuple[int, int] = (18, 22)
    peak_multiplier: str = "1.0"  # 1.0 disables time-of-day pricing

    payment_state_ttl_seconds: int = 300
    admin_token: str | None = None

    @property
    def is_production(self) -> bool:
        return self.paygate_env.lower() == "production"

    @property
    def keys_dir(self) -> Path:
        return self.paygate_data_dir / "keys"


settings = Settings()
settings.paygate_data_dir.mkdir(parents=True, exist_ok=True)
