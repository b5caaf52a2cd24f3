"""
Sync state persistence keyed by (record_id, record_type).

Two implementations share one async contract:
  - SQLSyncRecordStore: SQLModel rows in the `blockchain_syncs` table.
    Session work runs in the default thread pool so it doesn't block the
    event loop.
  - InMemorySyncRecordStore: a dict, used by the client-side mirror and as a
    test double. Rows without a record_type (mirror SyncResults) are keyed by
    record_id alone.

Only single-row atomicity is assumed. Two concurrent syncs of the same key
both read-then-write, and the last writer wins.
"""
import asyncio
import dataclasses
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from petchain.models.sync import RecordType, SyncState

# Fields a full replace copies onto the existing row (id and created_at stay).
_REPLACED_FIELDS = (
    "record_hash",
    "store_address",
    "ledger_ref",
    "status",
    "retry_count",
    "last_error",
    "synced_at",
)


class SyncRecordStore(Protocol):
    async def find_by_natural_key(
        self, record_id: str, record_type: Optional[RecordType]
    ) -> Optional[Any]: ...

    async def find_by_record_id(self, record_id: str) -> Optional[Any]: ...

    async def upsert(self, row: Any) -> Any: ...

    async def list_all(self) -> List[Any]: ...


class SQLSyncRecordStore:
    """SyncState rows in a relational database via SQLModel."""

    def __init__(self, engine):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
        """
        self.engine = engine

    async def _run(self, fn, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: fn(*args))

    async def find_by_natural_key(
        self, record_id: str, record_type: RecordType
    ) -> Optional[SyncState]:
        return await self._run(self._find_by_natural_key, record_id, record_type)

    async def find_by_record_id(self, record_id: str) -> Optional[SyncState]:
        return await self._run(self._find_by_record_id, record_id)

    async def upsert(self, state: SyncState) -> SyncState:
        """Insert, or fully replace the row with the same natural key."""
        return await self._run(self._upsert, state)

    async def list_all(self) -> List[SyncState]:
        return await self._run(self._list_all)

    # ─── Sync session work ────────────────────────────────────────────────────

    def _find_by_natural_key(
        self, record_id: str, record_type: RecordType
    ) -> Optional[SyncState]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncState).where(
                    SyncState.record_id == record_id,
                    SyncState.record_type == record_type,
                )
            ).first()

    def _find_by_record_id(self, record_id: str) -> Optional[SyncState]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncState)
                .where(SyncState.record_id == record_id)
                .order_by(SyncState.created_at)
            ).first()

    def _list_all(self) -> List[SyncState]:
        with Session(self.engine) as s:
            return list(s.exec(select(SyncState).order_by(SyncState.created_at)).all())

    def _upsert(self, state: SyncState) -> SyncState:
        try:
            return self._write(state)
        except IntegrityError:
            # Lost an insert race on the natural key; replace the winner's row.
            return self._write(state)

    def _write(self, state: SyncState) -> SyncState:
        with Session(self.engine) as s:
            existing = s.exec(
                select(SyncState).where(
                    SyncState.record_id == state.record_id,
                    SyncState.record_type == state.record_type,
                )
            ).first()

            if existing:
                for name in _REPLACED_FIELDS:
                    setattr(existing, name, getattr(state, name))
                row = existing
            else:
                row = SyncState(**state.model_dump())
            row.updated_at = datetime.utcnow()
            s.add(row)
            s.commit()
            s.refresh(row)
            return row


class InMemorySyncRecordStore:
    """Dict-backed store with the same contract as SQLSyncRecordStore.

    Rows are copied on the way in and out, so callers hold detached
    snapshots the way they would with SQL rows.
    """

    def __init__(self):
        self._rows: Dict[Tuple[str, Any], Any] = {}

    @staticmethod
    def _key(row: Any) -> Tuple[str, Any]:
        return (row.record_id, getattr(row, "record_type", None))

    @staticmethod
    def _clone(row: Any) -> Any:
        if row is None:
            return None
        if isinstance(row, SyncState):
            return SyncState(**row.model_dump())
        if dataclasses.is_dataclass(row):
            return dataclasses.replace(row)
        return row

    async def find_by_natural_key(
        self, record_id: str, record_type: Optional[RecordType]
    ) -> Optional[Any]:
        return self._clone(self._rows.get((record_id, record_type)))

    async def find_by_record_id(self, record_id: str) -> Optional[Any]:
        for (rid, _), row in self._rows.items():
            if rid == record_id:
                return self._clone(row)
        return None

    async def upsert(self, row: Any) -> Any:
        key = self._key(row)
        stored = self._clone(row)
        existing = self._rows.get(key)
        if isinstance(stored, SyncState):
            if existing is not None:
                stored.id = existing.id
                stored.created_at = existing.created_at
            stored.updated_at = datetime.utcnow()
        self._rows[key] = stored
        return self._clone(stored)

    async def list_all(self) -> List[Any]:
        return [self._clone(row) for row in self._rows.values()]
