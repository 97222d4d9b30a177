"""Application configuration using pydantic-settings.

Process-wide settings are read from the environment once. The network a
session talks to is described by an immutable NetworkConfig built from
those settings and passed explicitly to every component.
"""

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from zkwallet.exceptions import ConfigurationError, UnsupportedNetwork


class NetworkKind(str, Enum):
    """Chain families a session can bind to."""

    EVM = "evm"
    SUBSTRATE = "substrate"

    @classmethod
    def parse(cls, value: "str | NetworkKind") -> "NetworkKind":
        """Resolve a network kind, raising UnsupportedNetwork for unknown names."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnsupportedNetwork(
                f"Unsupported network kind: {value}", {"network_kind": str(value)}
            )


class DepositScheme(str, Enum):
    """How a deposit is authorized on chain."""

    APPROVE = "approve"                # allowance increase before deposit
    SALTED_PERMIT = "salted_permit"    # EIP-2612 style typed signature with salt
    PERMIT2 = "permit2"                # Permit2 contract signature
    SIGNED = "signed"                  # plain detached signature (Substrate)


@dataclass(frozen=True)
class NetworkConfig:
    """Immutable description of the network a session is bound to."""

    network_kind: NetworkKind
    rpc_url: str
    pool_address: str
    token_address: str
    relayer_url: str
    chain_id: int = 0
    explorer_tx_url: str = ""
    explorer_address_url: str = ""
    token_decimals: int = 18
    shielded_decimals: int = 9
    native_decimals: int = 18
    deposit_scheme: DepositScheme = DepositScheme.APPROVE
    ss58_format: int = 42
    token_permit_version: str = "1"

    def __post_init__(self) -> None:
        object.__setattr__(self, "network_kind", NetworkKind.parse(self.network_kind))
        object.__setattr__(self, "deposit_scheme", DepositScheme(self.deposit_scheme))

        missing = [
            name
            for name in ("rpc_url", "pool_address", "token_address", "relayer_url")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required network settings: {', '.join(missing)}",
                {"missing": missing},
            )
        if self.shielded_decimals > self.token_decimals:
            raise ConfigurationError(
                "shielded_decimals cannot exceed token_decimals",
                {
                    "shielded_decimals": self.shielded_decimals,
                    "token_decimals": self.token_decimals,
                },
            )

    @property
    def denominator(self) -> int:
        """Base token units per one shielded unit."""
        return 10 ** (self.token_decimals - self.shielded_decimals)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ZKWALLET_",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")
    dry_run: bool = Field(
        default=True, description="Bind the simulated pool client when no real one is registered"
    )

    # ======================
    # Vault
    # ======================
    vault_database_url: str = Field(
        default="sqlite+aiosqlite:///./data/zkwallet.db",
        description="Encrypted vault database URL",
    )
    min_password_length: int = Field(default=6, description="Minimum vault password length")

    # ======================
    # Transaction flow
    # ======================
    readiness_timeout: float = Field(
        default=60.0, description="Seconds to wait for the pool state to become ready"
    )
    readiness_poll_interval: float = Field(
        default=1.0, description="Seconds between readiness checks"
    )
    permit_deadline_seconds: int = Field(
        default=3600, description="Lifetime of permit signatures"
    )

    # ======================
    # Network
    # ======================
    network_kind: str = Field(default="evm", description="evm or substrate")
    chain_id: int = Field(default=11155111, description="EVM chain id")
    rpc_url: str = Field(default="", description="Chain RPC URL")
    pool_address: str = Field(default="", description="Shielded pool contract address")
    token_address: str = Field(default="", description="Pool token contract address")
    relayer_url: str = Field(default="", description="Relayer service URL")
    explorer_tx_url: str = Field(
        default="https://sepolia.etherscan.io/tx/{hash}",
        description="Transaction URL template",
    )
    explorer_address_url: str = Field(
        default="https://sepolia.etherscan.io/address/{address}",
        description="Address URL template",
    )
    token_decimals: int = Field(default=18, description="Pool token decimals")
    shielded_decimals: int = Field(default=9, description="Shielded amount decimals")
    native_decimals: int = Field(default=18, description="Native coin decimals")
    deposit_scheme: Optional[str] = Field(
        default=None, description="approve, salted_permit, permit2 or signed"
    )
    ss58_format: int = Field(default=42, description="SS58 address prefix for Substrate")
    token_permit_version: str = Field(default="1", description="EIP-712 domain version of the token")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def network_config(self) -> NetworkConfig:
        """Build the immutable network description for a session.

        Raises:
            UnsupportedNetwork: If network_kind is unknown
            ConfigurationError: If a required address or URL is missing
        """
        kind = NetworkKind.parse(self.network_kind)

        if self.deposit_scheme:
            try:
                scheme = DepositScheme(self.deposit_scheme.lower())
            except ValueError:
                raise ConfigurationError(
                    f"Unknown deposit scheme: {self.deposit_scheme}",
                    {"deposit_scheme": self.deposit_scheme},
                )
        else:
            scheme = DepositScheme.SIGNED if kind == NetworkKind.SUBSTRATE else DepositScheme.APPROVE

        return NetworkConfig(
            network_kind=kind,
            rpc_url=self.rpc_url,
            pool_address=self.pool_address,
            token_address=self.token_address,
            relayer_url=self.relayer_url,
            chain_id=self.chain_id,
            explorer_tx_url=self.explorer_tx_url,
            explorer_address_url=self.explorer_address_url,
            token_decimals=self.token_decimals,
            shielded_decimals=self.shielded_decimals,
            native_decimals=self.native_decimals,
            deposit_scheme=scheme,
            ss58_format=self.ss58_format,
            token_permit_version=self.token_permit_version,
        )

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "vault_database_url": self._redact_url(self.vault_database_url),
            "network": {
                "kind": self.network_kind,
                "chain_id": self.chain_id,
                "rpc": self._redact_url(self.rpc_url),
                "relayer": self.relayer_url or "(not set)",
                "pool": self.pool_address or "(not set)",
                "token": self.token_address or "(not set)",
                "deposit_scheme": self.deposit_scheme or "(default)",
            },
            "flow": {
                "readiness_timeout": self.readiness_timeout,
                "readiness_poll_interval": self.readiness_poll_interval,
                "permit_deadline_seconds": self.permit_deadline_seconds,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials embedded in a URL."""
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
