"""
AnchoringService: anchors medical records on Stellar via IPFS and verifies them.

Flow for a single record sync:
  1. Hash the canonical record (SHA-256)
  2. Load or create the SyncState for (record_id, record_type), set
     record_hash, status=PENDING, and persist it
  3. Encrypt the canonical record (AES-256-GCM)
  4. Upload the ciphertext to IPFS → CID
  5. Anchor MR_<hash prefix> = CID on Stellar → tx hash
  6. Mark SYNCED and persist

On any exception in 3-5: mark FAILED, record the message, bump retry_count,
persist, and return the state. Sync never raises for pipeline failures;
callers inspect `status`.

A retry always restarts from step 3. A CID or tx hash from an earlier partial
attempt is never reused; content addressing makes re-uploads idempotent.

Verification cross-checks three independent sources:
  local       current data hashes to the stored record_hash (record drift)
  blockchain  the ledger entry still points at the stored CID (pointer tampering)
  ipfs        the stored blob decrypts to data with the same hash (blob tampering)
Mismatches are reported, not raised.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

from petchain.crypto.encryptor import DecryptionError, Encryptor, canonicalize
from petchain.models.sync import RecordType, SyncState, SyncStatus

logger = logging.getLogger(__name__)


class NotSynced(RuntimeError):
    """Verification requested for a record without a successful sync."""


class SyncStateNotFound(RuntimeError):
    """No sync state exists for the requested record id."""


@dataclass
class VerificationReport:
    record_id: str
    local: bool
    blockchain: bool
    ipfs: bool
    synced_at: Optional[datetime]
    ledger_ref: Optional[str]
    status: str = "verified"

    @property
    def fully_verified(self) -> bool:
        return self.local and self.blockchain and self.ipfs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordId": self.record_id,
            "status": self.status,
            "integrity": {
                "local": self.local,
                "blockchain": self.blockchain,
                "ipfs": self.ipfs,
            },
            "syncedAt": self.synced_at.isoformat() if self.synced_at else None,
            "txHash": self.ledger_ref,
        }


class AnchoringService:
    """Orchestrates hash → encrypt → IPFS → Stellar for medical records."""

    def __init__(self, store, encryptor: Encryptor, ipfs, ledger):
        """
        Args:
            store: SyncRecordStore (SQL or in-memory).
            encryptor: Encryptor holding the process-wide record key.
            ipfs: IPFSClient (or AsyncMock in tests).
            ledger: StellarLedgerClient (or AsyncMock in tests).
        """
        self.store = store
        self.encryptor = encryptor
        self.ipfs = ipfs
        self.ledger = ledger

    async def sync_record(
        self, record_id: str, record_type: Union[RecordType, str], data: Any
    ) -> SyncState:
        """
        Anchor the current version of a record.

        Returns:
            The persisted SyncState, SYNCED or FAILED.
        """
        record_type = RecordType(record_type)
        record_hash = self.encryptor.hash_data(data)

        state = await self.store.find_by_natural_key(record_id, record_type)
        if state is None:
            state = SyncState(
                record_id=record_id,
                record_type=record_type,
                record_hash=record_hash,
                status=SyncStatus.PENDING,
            )
        else:
            state.record_hash = record_hash
            state.status = SyncStatus.PENDING
        state = await self.store.upsert(state)

        try:
            encrypted = self.encryptor.encrypt(canonicalize(data))
            state.store_address = await self.ipfs.upload(encrypted)
            state.ledger_ref = await self.ledger.anchor_record(
                record_hash, state.store_address
            )
            state.status = SyncStatus.SYNCED
            state.synced_at = datetime.utcnow()
            state.last_error = None
            logger.info(
                "Synced %s %s (tx %s)", record_type.value, record_id, state.ledger_ref
            )
        except Exception as exc:
            logger.error("Sync failed for record %s: %s", record_id, exc)
            state.status = SyncStatus.FAILED
            state.last_error = str(exc) or exc.__class__.__name__
            state.retry_count += 1

        return await self.store.upsert(state)

    async def verify_record(
        self,
        record_id: str,
        record_type: Union[RecordType, str],
        current_data: Any,
    ) -> VerificationReport:
        """
        Check current data, the ledger anchor and the IPFS blob against each other.

        Raises:
            NotSynced: if the record has no SYNCED state.
            LedgerUnavailable / StoreUnavailable / ContentNotFound: infrastructure
                failures while reading the anchor or the blob.
        """
        record_type = RecordType(record_type)
        state = await self.store.find_by_natural_key(record_id, record_type)
        if state is None or state.status != SyncStatus.SYNCED:
            raise NotSynced("Record not synced or sync pending")

        integrity_local = self.encryptor.hash_data(current_data) == state.record_hash

        on_chain_address = await self.ledger.verify_on_chain(state.record_hash)
        integrity_chain = on_chain_address == state.store_address

        blob = await self.ipfs.retrieve(state.store_address)
        integrity_ipfs = self._blob_matches(blob, state.record_hash)

        if not (integrity_local and integrity_chain and integrity_ipfs):
            logger.warning(
                "Integrity mismatch for %s %s: local=%s blockchain=%s ipfs=%s",
                record_type.value,
                record_id,
                integrity_local,
                integrity_chain,
                integrity_ipfs,
            )

        return VerificationReport(
            record_id=record_id,
            local=integrity_local,
            blockchain=integrity_chain,
            ipfs=integrity_ipfs,
            synced_at=state.synced_at,
            ledger_ref=state.ledger_ref,
        )

    async def get_sync_status(self, record_id: str) -> SyncState:
        """Sync state for a record id, whatever its record type."""
        state = await self.store.find_by_record_id(record_id)
        if state is None:
            raise SyncStateNotFound(f"Sync status not found for record {record_id}")
        return state

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _blob_matches(self, blob: bytes, record_hash: str) -> bool:
        """Decrypt a stored blob and compare its canonical hash."""
        try:
            decrypted = self.encryptor.decrypt(blob)
            data = json.loads(decrypted)
        except (DecryptionError, ValueError) as exc:
            logger.warning("Stored blob failed to decode: %s", exc)
            return False
        return self.encryptor.hash_data(data) == record_hash
