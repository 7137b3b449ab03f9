"""
x402 Facilitator Configuration Management
Uses pydantic-settings for type-safe environment variable loading
"""

from typing import Literal, Optional

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from stellar_sdk import Keypair
from stellar_sdk.exceptions import Ed25519SecretSeedInvalidError


class FacilitatorConfig(BaseSettings):
    """Configuration for the x402 facilitator service"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Host to bind the server to")
    port: int = Field(default=3000, description="Port to bind the server to")

    # Network Configuration
    network: Literal["stellar-testnet", "stellar-pubnet"] = Field(default="stellar-testnet")
    horizon_url: str = Field(default="https://horizon-testnet.stellar.org")
    network_passphrase: str = Field(default="Test SDF Network ; September 2015")

    # x402 Protocol
    x402_version: int = Field(default=1)
    scheme: Literal["exact"] = Field(default="exact")
    asset: str = Field(default="native", description="'native' or a credit asset code / CODE:ISSUER")
    payment_timeout_seconds: int = Field(default=300, description="Payment window in seconds")
    default_resource: str = Field(default="/api/pay")

    # Facilitator wallet
    facilitator_private_key: str = Field(default="", description="Stellar secret seed (S...)")
    pay_to_address: str = Field(default="", description="Default payee (G...)")

    # Settlement
    fee_sponsorship: bool = Field(default=True)
    fee_bump_base_fee: int = Field(default=200, description="Fee-bump base fee in stroops")
    recheck_balance_before_settle: bool = Field(default=True)
    settlement_poll_interval: float = Field(default=1.0)
    settlement_max_poll_attempts: int = Field(default=30)

    # Job maintenance
    job_retention_seconds: int = Field(default=3600)
    sweep_interval_seconds: int = Field(default=300)

    # Webhooks
    webhook_backend_url: str = Field(default="")
    webhook_timeout_seconds: float = Field(default=10.0)
    webhook_source: str = Field(default="x402-facilitator")

    block_explorer_url: str = Field(default="https://stellar.expert/explorer/testnet")

    # CORS Configuration
    cors_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Development
    debug: bool = Field(default=False)

    @field_validator("facilitator_private_key")
    @classmethod
    def validate_private_key(cls, v):
        v = v.strip()
        if not v:
            return v
        try:
            Keypair.from_secret(v)
        except Ed25519SecretSeedInvalidError:
            raise ValueError("facilitator_private_key is not a valid Stellar secret seed")
        return v

    @field_validator("pay_to_address")
    @classmethod
    def validate_pay_to(cls, v):
        v = v.strip()
        if v and not v.startswith("G"):
            raise ValueError("pay_to_address must be a Stellar account id (G...)")
        return v

    @property
    def default_pay_to(self) -> Optional[str]:
        return self.pay_to_address or None


def configure_logging(config: FacilitatorConfig) -> None:
    """Configure structlog once for the running process"""
    import logging

    renderer = (
        structlog.processors.JSONRenderer()
        if config.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.log_level)
        ),
    )


# Singleton instance
_facilitator_config: FacilitatorConfig | None = None


def get_facilitator_config() -> FacilitatorConfig:
    """Get or create facilitator configuration singleton"""
    global _facilitator_config
    if _facilitator_config is None:
        _facilitator_config = FacilitatorConfig()
    return _facilitator_config
