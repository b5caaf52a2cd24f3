"""Anchoring state model: one row per (record_id, record_type)."""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class RecordType(str, Enum):
    VACCINATION = "vaccination"
    TREATMENT = "treatment"
    ALLERGY = "allergy"

    @classmethod
    def _missing_(cls, value):
        # Accept "VACCINATION" as well as "vaccination"
        if isinstance(value, str):
            return cls.__members__.get(value.upper())
        return None


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


def _new_id() -> str:
    return uuid.uuid4().hex


class SyncState(SQLModel, table=True):
    """
    Anchoring progress and outcome for one medical record.

    status == SYNCED implies store_address and ledger_ref are set and
    record_hash is the hash of the data they were produced from.
    retry_count only ever grows; a successful sync leaves it untouched.
    """

    __tablename__ = "blockchain_syncs"
    __table_args__ = (
        UniqueConstraint("record_id", "record_type", name="uq_blockchain_syncs_record"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    record_id: str = Field(index=True)
    record_type: RecordType
    record_hash: str
    store_address: Optional[str] = None  # IPFS CID of the encrypted record
    ledger_ref: Optional[str] = None  # Stellar transaction hash
    status: SyncStatus = SyncStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """camelCase view used by the HTTP layer."""
        return {
            "id": self.id,
            "recordId": self.record_id,
            "recordType": _value(self.record_type),
            "recordHash": self.record_hash,
            "ipfsHash": self.store_address,
            "txHash": self.ledger_ref,
            "status": _value(self.status),
            "retryCount": self.retry_count,
            "lastError": self.last_error,
            "syncedAt": _iso(self.synced_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


def _value(member: Any) -> Any:
    return member.value if isinstance(member, Enum) else member


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
