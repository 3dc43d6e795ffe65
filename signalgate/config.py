"""
Service configuration, read once from environment variables.

SOLANA_NETWORK            mainnet -> "solana", anything else -> "solana-devnet"
TREASURY_WALLET_ADDRESS   payTo address for signal payments
FACILITATOR_URL           x402 facilitator base URL
USDC_MINT_ADDRESS         SPL mint of the payment asset
SIGNAL_PRICE_MICRO_USDC   price per signal in asset micro-units
PUBLIC_BASE_URL           prefix that turns resource paths into URLs
DATABASE_URL              Postgres DSN; unset -> in-memory storage
HUGGINGFACE_API_KEY       enables the hosted model engine
SIGNALGATE_ADMIN_PASSWORD enables admin endpoints (Basic auth, user "admin")
"""
import os
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger("config")

DEVNET_USDC_MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"
USDC_DECIMALS = 6


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    network: str = "solana-devnet"
    treasury_address: str = ""
    facilitator_url: str = "https://facilitator.payai.network"
    usdc_mint: str = DEVNET_USDC_MINT
    asset_decimals: int = USDC_DECIMALS
    signal_price: int = 10000
    public_base_url: str = "https://localhost"
    database_url: Optional[str] = None
    huggingface_api_key: Optional[str] = None
    hf_model: str = "mistralai/Mistral-7B-Instruct-v0.2"
    pyth_hermes_url: str = "https://hermes.pyth.network"
    admin_password: Optional[str] = None
    oracle_timeout: float = 15.0
    upstream_timeout: float = 10.0
    storage_timeout: float = 5.0
    cors_origins: tuple = field(default_factory=lambda: ("*",))

    @classmethod
    def from_env(cls) -> "Settings":
        price_raw = os.getenv("SIGNAL_PRICE_MICRO_USDC", "10000")
        try:
            price = int(price_raw)
        except ValueError:
            raise ValueError(f"SIGNAL_PRICE_MICRO_USDC must be an integer, got {price_raw!r}")
        if price <= 0:
            raise ValueError("SIGNAL_PRICE_MICRO_USDC must be positive")

        origins = os.getenv("CORS_ALLOW_ORIGINS", "*")

        settings = cls(
            network="solana" if os.getenv("SOLANA_NETWORK") == "mainnet" else "solana-devnet",
            treasury_address=os.getenv("TREASURY_WALLET_ADDRESS", ""),
            facilitator_url=os.getenv("FACILITATOR_URL", "https://facilitator.payai.network"),
            usdc_mint=os.getenv("USDC_MINT_ADDRESS", DEVNET_USDC_MINT),
            signal_price=price,
            public_base_url=os.getenv("PUBLIC_BASE_URL", "https://localhost"),
            database_url=os.getenv("DATABASE_URL") or None,
            huggingface_api_key=os.getenv("HUGGINGFACE_API_KEY") or None,
            hf_model=os.getenv("HF_MODEL", "mistralai/Mistral-7B-Instruct-v0.2"),
            pyth_hermes_url=os.getenv("PYTH_HERMES_URL", "https://hermes.pyth.network"),
            admin_password=os.getenv("SIGNALGATE_ADMIN_PASSWORD") or None,
            oracle_timeout=_float_env("ORACLE_TIMEOUT_SECONDS", 15.0),
            upstream_timeout=_float_env("UPSTREAM_TIMEOUT_SECONDS", 10.0),
            storage_timeout=_float_env("STORAGE_TIMEOUT_SECONDS", 5.0),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )

        if not settings.treasury_address:
            logger.warning("TREASURY_WALLET_ADDRESS not set. Payment receiving address required.")
        return settings

    @property
    def signal_price_usdc(self) -> float:
        return self.signal_price / (10 ** self.asset_decimals)
