"""
APScheduler job that polls the client-side mirror's sync statuses.

The web tier shows mirror progress by polling every 2 seconds. Latency only;
correctness never depends on the poll.
"""
import logging
from typing import Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from petchain.config import get_settings
from petchain.mirror.stellar_sync import SyncResult

logger = logging.getLogger(__name__)


def build_scheduler(
    mirror,
    on_update: Callable[[List[SyncResult]], None],
    interval_seconds: Optional[int] = None,
) -> AsyncIOScheduler:
    """
    Create and configure the status-poll scheduler.

    Args:
        mirror: ClientSideSyncMirror whose statuses are published.
        on_update: Called with the full status list on every tick.
        interval_seconds: Poll interval; defaults to MIRROR_POLL_INTERVAL_SECONDS.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    if interval_seconds is None:
        interval_seconds = get_settings().mirror_poll_interval_seconds
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _poll_statuses,
        trigger="interval",
        seconds=interval_seconds,
        id="sync_status_poll",
        replace_existing=True,
        kwargs={"mirror": mirror, "on_update": on_update},
    )

    return scheduler


async def _poll_statuses(mirror, on_update: Callable[[List[SyncResult]], None]) -> None:
    """Publish a snapshot of every mirror sync result."""
    try:
        statuses = await mirror.get_all_sync_statuses()
        on_update(statuses)
    except Exception as exc:
        logger.error("Status poll failed: %s", exc)
