# healthchain/config.py
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Dict, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "healthchain"

    # disabled | enabled | hybrid (case-sensitive, anything else means disabled)
    blockchain_mode: str = "disabled"

    rpc_url: Optional[str] = None
    identity_registry_address: Optional[str] = None
    consent_manager_address: Optional[str] = None
    incentive_vault_address: Optional[str] = None
    # server signer for hospital/admin-only flows (incentive payouts)
    hospital_private_key: Optional[str] = None
    contract_abi_dir: Optional[str] = None
    ledger_timeout_seconds: float = 120.0
    ledger_gas_limit: int = 500_000

    # where consent grants and incentive payouts are kept: mongo | memory
    fallback_store: str = "mongo"

    jwt_secret: str = "change-me-in-production"
    jwt_expires_minutes: int = 24 * 60
    bcrypt_rounds: int = 12

    log_level: str = "INFO"
    log_format: str = "console"

    class Config:
        env_file = ".env"


settings = Settings()


class BlockchainMode(str, Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"
    HYBRID = "hybrid"


CAPABILITIES = ("identity", "consent", "records", "incentives")


@dataclass(frozen=True)
class CapabilityFlags:
    blockchain: bool
    database: bool = True


@dataclass(frozen=True)
class ModeConfig:
    """
    Tri-state blockchain mode resolved into per-capability flags.

    Built once per process (see get_mode_config). There is no setter: changing
    the mode means restarting the process, so concurrent requests never observe
    different modes for the same operation.
    """

    mode: BlockchainMode

    @classmethod
    def from_value(cls, raw: Optional[str]) -> "ModeConfig":
        # exact match only: "Enabled" or " enabled" fall back to disabled
        for mode in BlockchainMode:
            if raw == mode.value:
                return cls(mode=mode)
        return cls(mode=BlockchainMode.DISABLED)

    @property
    def enabled(self) -> bool:
        return self.mode is BlockchainMode.ENABLED

    @property
    def disabled(self) -> bool:
        return self.mode is BlockchainMode.DISABLED

    @property
    def hybrid(self) -> bool:
        return self.mode is BlockchainMode.HYBRID

    def capability(self, name: str) -> CapabilityFlags:
        if name not in CAPABILITIES:
            raise KeyError(f"Unknown capability: {name}")
        return CapabilityFlags(blockchain=self.enabled or self.hybrid)

    def blockchain_active(self, name: str) -> bool:
        return self.capability(name).blockchain

    def as_dict(self) -> Dict[str, object]:
        return {
            "mode": self.mode.value,
            "enabled": self.enabled,
            "disabled": self.disabled,
            "hybrid": self.hybrid,
            "features": {
                name: {
                    "blockchain": self.capability(name).blockchain,
                    "database": self.capability(name).database,
                }
                for name in CAPABILITIES
            },
        }


@lru_cache(maxsize=1)
def get_mode_config() -> ModeConfig:
    return ModeConfig.from_value(settings.blockchain_mode)
