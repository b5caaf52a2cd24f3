"""Anchoring trigger, status and verification routes."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from stellar_sdk import Keypair

from petchain.anchoring.factory import build_anchoring_service, build_mirror
from petchain.anchoring.service import AnchoringService, NotSynced, SyncStateNotFound
from petchain.db.engine import get_engine
from petchain.ipfs.client import ContentNotFound, StoreUnavailable
from petchain.mirror.stellar_sync import ClientSideSyncMirror, MedicalRecord
from petchain.models.sync import RecordType
from petchain.stellar.client import LedgerNotConfigured, LedgerUnavailable

logger = logging.getLogger(__name__)

router = APIRouter()

_service: Optional[AnchoringService] = None
_mirror: Optional[ClientSideSyncMirror] = None


def get_anchoring_service() -> AnchoringService:
    """Process-wide service; the record key is derived once on first use."""
    global _service
    if _service is None:
        _service = build_anchoring_service(get_engine())
    return _service


def get_mirror() -> ClientSideSyncMirror:
    global _mirror
    if _mirror is None:
        _mirror = build_mirror()
    return _mirror


class RecordPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    record_type: RecordType = Field(alias="recordType")
    data: Any = None


class MirrorSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    record: Optional[Dict[str, Any]] = None
    secret_key: Optional[str] = Field(default=None, alias="secretKey")
    encryption_key: Optional[str] = Field(default=None, alias="encryptionKey")


@router.get("/status/{record_id}")
async def get_status(
    record_id: str, service: AnchoringService = Depends(get_anchoring_service)
):
    try:
        state = await service.get_sync_status(record_id)
    except SyncStateNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return state.to_dict()


@router.post("/verify/{record_id}")
async def verify(
    record_id: str,
    payload: RecordPayload,
    service: AnchoringService = Depends(get_anchoring_service),
):
    try:
        report = await service.verify_record(record_id, payload.record_type, payload.data)
    except NotSynced as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except (StoreUnavailable, ContentNotFound, LedgerUnavailable, LedgerNotConfigured) as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return report.to_dict()


@router.post("/trigger/{record_id}")
async def trigger_sync(
    record_id: str,
    payload: RecordPayload,
    service: AnchoringService = Depends(get_anchoring_service),
):
    """
    Manually anchor a record. Normally syncs are triggered by record writes.
    A failed sync still returns 200; inspect `status`.
    """
    state = await service.sync_record(record_id, payload.record_type, payload.data)
    return state.to_dict()


@router.post("/mirror")
async def mirror_sync(
    request: MirrorSyncRequest,
    mirror: ClientSideSyncMirror = Depends(get_mirror),
):
    """Anchor a record with a caller-supplied signing key (never stored)."""
    if not request.record or not request.secret_key or not request.encryption_key:
        raise HTTPException(status_code=400, detail="Missing required fields")
    try:
        record = MedicalRecord.from_dict(request.record)
        signer = Keypair.from_secret(request.secret_key)
    except (KeyError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid request: {exc}")

    try:
        result = await mirror.sync_record(record, signer, request.encryption_key)
    except Exception as exc:
        logger.error("Mirror sync crashed for record %s: %s", record.id, exc)
        raise HTTPException(status_code=500, detail=str(exc) or "Unknown error")
    return result.to_dict()


@router.get("/mirror/statuses", response_model=List[Dict[str, Any]])
async def mirror_statuses(mirror: ClientSideSyncMirror = Depends(get_mirror)):
    return [r.to_dict() for r in await mirror.get_all_sync_statuses()]
