"""
Client-side sync mirror: the lightweight anchoring path used by the web tier.

Differences from AnchoringService (anchors from both paths are live on the
ledger, so neither key format can change):
  - Only critical records, vaccinations and diagnoses are anchored; anything
    else is reported as success without touching the ledger.
  - Ledger key is "pet_<petId>_<type>", not "MR_<hash prefix>".
  - Encoded payloads up to 1024 bytes are embedded directly (first 64 chars);
    larger ones go to IPFS and only the CID is anchored.
  - Signing uses a caller-supplied keypair that is never stored.
  - Results are keyed by record id alone.
  - Failures self-retry up to max_retries times, sleeping
    attempt * retry_base_seconds between tries (linear, not exponential).
"""
import asyncio
import base64
import hashlib
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from stellar_sdk import Keypair

from petchain.crypto.encryptor import KDF_ITERATIONS, canonicalize, derive_key, encrypt
from petchain.records.store import InMemorySyncRecordStore

logger = logging.getLogger(__name__)

ANCHORED_RECORD_TYPES = ("vaccination", "diagnosis")
EMBED_THRESHOLD_BYTES = 1024
EMBED_LENGTH = 64
KEY_CACHE_SIZE = 128


class MirrorStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


@dataclass
class MedicalRecord:
    id: str
    pet_id: str
    type: str  # "vaccination", "treatment", "diagnosis", "prescription"
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""
    critical: bool = False

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MedicalRecord":
        """Accepts the camelCase shape the web client posts."""
        return cls(
            id=str(d["id"]),
            pet_id=str(d.get("petId", d.get("pet_id", ""))),
            type=d["type"],
            data=d.get("data") or {},
            timestamp=d.get("timestamp", ""),
            critical=bool(d.get("critical", False)),
        )


@dataclass
class SyncResult:
    record_id: str
    status: MirrorStatus = MirrorStatus.IDLE
    ledger_ref: Optional[str] = None
    store_address: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    fee: str = "0"

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "recordId": self.record_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "fee": self.fee,
        }
        if self.ledger_ref is not None:
            d["txHash"] = self.ledger_ref
        if self.store_address is not None:
            d["ipfsHash"] = self.store_address
        if self.error is not None:
            d["error"] = self.error
        return d


def ledger_data_key(record: MedicalRecord) -> str:
    return f"pet_{record.pet_id}_{record.type}"


class ClientSideSyncMirror:
    """Queues records, anchors the ones policy selects, and retries failures."""

    def __init__(
        self,
        ledger,
        ipfs,
        store=None,
        max_retries: int = 3,
        retry_base_seconds: float = 2.0,
        kdf_iterations: int = KDF_ITERATIONS,
        key_cache_size: int = KEY_CACHE_SIZE,
    ):
        """
        Args:
            ledger: StellarLedgerClient used for reads, fee stats and submission.
            ipfs: IPFSClient for payloads above the embed threshold.
            store: SyncRecordStore for results; defaults to in-memory.
            max_retries: Retries after the first failed attempt.
            retry_base_seconds: Delay unit; retry n waits n * this.
            kdf_iterations: PBKDF2 iterations for caller-supplied keys.
            key_cache_size: Most derived keys kept; least recently used go first.
        """
        self.ledger = ledger
        self.ipfs = ipfs
        self.store = store if store is not None else InMemorySyncRecordStore()
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.kdf_iterations = kdf_iterations
        self.key_cache_size = key_cache_size
        # SHA-256 of the passphrase -> derived key, oldest first
        self._keys: "OrderedDict[bytes, bytes]" = OrderedDict()

    @staticmethod
    def should_anchor(record: MedicalRecord) -> bool:
        return record.critical or record.type in ANCHORED_RECORD_TYPES

    def encode_record(self, record: MedicalRecord, encryption_key: str) -> str:
        """Base64 of the AES-GCM encrypted canonical record data."""
        blob = encrypt(canonicalize(record.data), self._key_for(encryption_key))
        return base64.b64encode(blob).decode("ascii")

    async def sync_record(
        self, record: MedicalRecord, signer: Keypair, encryption_key: str
    ) -> SyncResult:
        """
        Anchor one record, retrying on failure.

        Returns:
            SyncResult with status SUCCESS or FAILED; never raises for
            pipeline failures.
        """
        result = SyncResult(record_id=record.id, status=MirrorStatus.SYNCING)
        await self.store.upsert(result)

        if not self.should_anchor(record):
            result.status = MirrorStatus.SUCCESS
            return await self.store.upsert(result)

        while True:
            try:
                await self._anchor(record, signer, encryption_key, result)
                result.status = MirrorStatus.SUCCESS
                result.error = None
                break
            except Exception as exc:
                result.error = str(exc) or exc.__class__.__name__
                result.status = MirrorStatus.FAILED
                logger.warning(
                    "Mirror sync failed for record %s (attempt %d/%d): %s",
                    record.id,
                    result.attempts + 1,
                    self.max_retries + 1,
                    result.error,
                )
                if result.attempts >= self.max_retries:
                    break
                result.attempts += 1
                result.status = MirrorStatus.RETRYING
                await self.store.upsert(result)
                await asyncio.sleep(result.attempts * self.retry_base_seconds)

        return await self.store.upsert(result)

    async def verify_record(self, record_id: str) -> bool:
        """True if the record's anchoring transaction succeeded on the ledger.

        Fail-closed: unknown records, missing tx hashes and lookup errors
        all return False.
        """
        result = await self.store.find_by_record_id(record_id)
        if result is None or not result.ledger_ref:
            return False
        try:
            return await self.ledger.transaction_successful(result.ledger_ref)
        except Exception as exc:
            logger.warning("Mirror verification failed for %s: %s", record_id, exc)
            return False

    async def get_sync_status(self, record_id: str) -> Optional[SyncResult]:
        return await self.store.find_by_record_id(record_id)

    async def get_all_sync_statuses(self) -> List[SyncResult]:
        return await self.store.list_all()

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _key_for(self, encryption_key: str) -> bytes:
        fingerprint = hashlib.sha256(encryption_key.encode("utf-8")).digest()
        key = self._keys.get(fingerprint)
        if key is not None:
            self._keys.move_to_end(fingerprint)
            return key
        key = derive_key(encryption_key, iterations=self.kdf_iterations)
        self._keys[fingerprint] = key
        while len(self._keys) > self.key_cache_size:
            self._keys.popitem(last=False)
        return key

    async def _anchor(
        self,
        record: MedicalRecord,
        signer: Keypair,
        encryption_key: str,
        result: SyncResult,
    ) -> None:
        encoded = self.encode_record(record, encryption_key)
        if len(encoded.encode("utf-8")) > EMBED_THRESHOLD_BYTES:
            value = await self.ipfs.upload(encoded.encode("utf-8"))
            result.store_address = value
        else:
            value = encoded[:EMBED_LENGTH]

        fee = await self.ledger.estimate_fee()
        result.ledger_ref = await self.ledger.manage_data(
            ledger_data_key(record), value, signer=signer, fee=int(fee)
        )
        result.fee = fee
