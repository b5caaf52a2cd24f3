"""Builds anchoring components from Settings. No module-level singletons."""
from typing import Optional

from petchain.anchoring.service import AnchoringService
from petchain.config import Settings, get_settings
from petchain.crypto.encryptor import Encryptor
from petchain.ipfs.client import IPFSClient
from petchain.mirror.stellar_sync import ClientSideSyncMirror
from petchain.records.store import InMemorySyncRecordStore, SQLSyncRecordStore
from petchain.stellar.client import StellarLedgerClient


def build_ledger_client(settings: Settings) -> StellarLedgerClient:
    return StellarLedgerClient(
        horizon_url=settings.horizon_url(),
        network_passphrase=settings.network_passphrase(),
        secret_key=settings.stellar_secret_key or None,
        account_id=settings.stellar_account_id or None,
        base_fee=settings.stellar_base_fee,
        timeout=settings.ledger_timeout_seconds,
    )


def build_ipfs_client(settings: Settings) -> IPFSClient:
    if not settings.ipfs_url:
        raise ValueError("IPFS_URL is not set")
    return IPFSClient(settings.ipfs_url, timeout=settings.ipfs_timeout_seconds)


def build_anchoring_service(
    engine, settings: Optional[Settings] = None
) -> AnchoringService:
    """Wire the server-side service against the SQL sync-state store.

    Raises:
        ValueError: if ENCRYPTION_KEY or IPFS_URL is missing.
    """
    settings = settings or get_settings()
    if not settings.encryption_key:
        raise ValueError("ENCRYPTION_KEY is not set; refusing to anchor unencrypted records")
    return AnchoringService(
        store=SQLSyncRecordStore(engine),
        encryptor=Encryptor.from_secret(
            settings.encryption_key, iterations=settings.encryption_kdf_iterations
        ),
        ipfs=build_ipfs_client(settings),
        ledger=build_ledger_client(settings),
    )


def build_mirror(settings: Optional[Settings] = None) -> ClientSideSyncMirror:
    """Wire the client-side mirror. It signs with caller-supplied keys only."""
    settings = settings or get_settings()
    read_only = settings.model_copy(update={"stellar_secret_key": ""})
    return ClientSideSyncMirror(
        ledger=build_ledger_client(read_only),
        ipfs=build_ipfs_client(settings),
        store=InMemorySyncRecordStore(),
        max_retries=settings.mirror_max_retries,
        retry_base_seconds=settings.mirror_retry_base_seconds,
        kdf_iterations=settings.encryption_kdf_iterations,
    )
