"""Application configuration using pydantic-settings.

All chain constants (factory address, class hash, token address) are
configurable so the same build serves Sepolia and mainnet.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/phonevault.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8080, description="API server port")
    admin_token: str = Field(default="", description="Admin API token for protected endpoints")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")
    dry_run: bool = Field(
        default=True, description="Use the simulated chain and log OTP codes instead of sending"
    )

    # ======================
    # Starknet
    # ======================
    starknet_rpc_url: str = Field(
        default="https://free-rpc.nethermind.io/sepolia-juno", description="Starknet JSON-RPC URL"
    )
    starknet_chain: str = Field(default="sepolia", description="sepolia or mainnet")
    relayer_address: str = Field(
        default="0x0" + "1" * 63, description="Relayer (deployer) account address"
    )
    relayer_private_key: Optional[str] = Field(
        default=None, description="Relayer account private key (hex)"
    )
    vault_factory_address: str = Field(
        default="0x0" + "2" * 63, description="Factory deploying phone accounts"
    )
    blank_account_class_hash: str = Field(
        default="0x0" + "3" * 63, description="Class hash of the blank account contract"
    )
    usdc_address: str = Field(
        default="0x053b40a647cedfca6ca84f542a0fe36736031905a9639a7f19a3c1e66bfd5080",
        description="USDC token contract address",
    )

    # ======================
    # Relayer
    # ======================
    fee_multiplier: float = Field(default=1.5, description="Safety factor applied to fee estimates")
    nonce_retry_limit: int = Field(default=3, description="Retries after a stale relayer nonce")
    transient_retries: int = Field(default=2, description="Retries for transient provider errors")
    retry_backoff: float = Field(default=0.5, description="Base backoff in seconds (doubles)")
    submit_timeout: float = Field(default=30.0, description="Chain submission timeout in seconds")

    # ======================
    # OTP
    # ======================
    otp_ttl_seconds: int = Field(default=300, description="Verification code lifetime")
    otp_code_length: int = Field(default=6, description="Number of digits in a code")
    otp_max_attempts: int = Field(default=5, description="Failed attempts before lockout")
    otp_secret: str = Field(
        default="dev-otp-secret", description="HMAC key for stored code digests"
    )
    default_region: str = Field(default="FR", description="Region used to parse local numbers")

    # ======================
    # Twilio
    # ======================
    twilio_account_sid: str = Field(default="", description="Twilio account SID")
    twilio_auth_token: str = Field(default="", description="Twilio auth token")
    twilio_from_number: str = Field(default="", description="Sender number for SMS codes")

    # ======================
    # Claim links
    # ======================
    claim_ttl_days: int = Field(default=30, description="Claim link lifetime in days")

    # ======================
    # Webhooks
    # ======================
    onramp_webhook_secret: Optional[str] = Field(
        default=None, description="HMAC secret for fiat on-ramp status webhooks"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def has_twilio(self) -> bool:
        """Check if Twilio credentials are configured."""
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "starknet": {
                "rpc": self.starknet_rpc_url,
                "chain": self.starknet_chain,
                "relayer": self.relayer_address,
                "relayer_key": "***" if self.relayer_private_key else "(not set)",
                "factory": self.vault_factory_address,
                "class_hash": self.blank_account_class_hash,
            },
            "otp": {
                "ttl_seconds": self.otp_ttl_seconds,
                "max_attempts": self.otp_max_attempts,
                "twilio": "***" if self.has_twilio else "(not set)",
            },
            "claims": {"ttl_days": self.claim_ttl_days},
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
