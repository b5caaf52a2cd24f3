from typing import Optional

from pydantic_settings import BaseSettings
from stellar_sdk import Network

# Horizon endpoints and passphrases per network selector.
STELLAR_NETWORKS = {
    "PUBLIC": {
        "horizon_url": "https://horizon.stellar.org",
        "network_passphrase": Network.PUBLIC_NETWORK_PASSPHRASE,
    },
    "TESTNET": {
        "horizon_url": "https://horizon-testnet.stellar.org",
        "network_passphrase": Network.TESTNET_NETWORK_PASSPHRASE,
    },
}


class Settings(BaseSettings):
    database_url: str = "sqlite:///./petchain.db"

    stellar_network: str = "TESTNET"  # "TESTNET" or "PUBLIC"
    stellar_horizon_url: str = ""  # blank: use the network's default
    stellar_network_passphrase: str = ""
    stellar_secret_key: str = ""  # blank: read-only mode
    stellar_account_id: str = ""  # read-only mode: account to verify against
    stellar_base_fee: int = 100  # stroops
    ledger_timeout_seconds: float = 60.0

    ipfs_url: str = ""
    ipfs_timeout_seconds: float = 30.0

    encryption_key: str = ""
    encryption_kdf_iterations: int = 600_000

    mirror_max_retries: int = 3
    mirror_retry_base_seconds: float = 2.0
    mirror_poll_interval_seconds: int = 2

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def horizon_url(self) -> str:
        return self.stellar_horizon_url or _network(self.stellar_network)["horizon_url"]

    def network_passphrase(self) -> str:
        return (
            self.stellar_network_passphrase
            or _network(self.stellar_network)["network_passphrase"]
        )


def _network(name: str) -> dict:
    try:
        return STELLAR_NETWORKS[name.upper()]
    except KeyError:
        raise ValueError(
            f"Unknown STELLAR_NETWORK {name!r}; expected one of {sorted(STELLAR_NETWORKS)}"
        ) from None


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
