"""FastAPI application factory."""
import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI

from petchain.api.routes import sync as sync_routes
from petchain.mirror.stellar_sync import SyncResult
from petchain.scheduler.jobs import build_scheduler

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Poll mirror statuses in the background (dependency overrides apply)
        provider = app.dependency_overrides.get(
            sync_routes.get_mirror, sync_routes.get_mirror
        )
        try:
            mirror = provider()
        except ValueError as exc:
            logger.warning("Client-side mirror disabled: %s", exc)
            yield
            return

        app.state.mirror_status_counts = {}

        def publish(statuses: List[SyncResult]) -> None:
            counts = dict(Counter(r.status.value for r in statuses))
            if counts != app.state.mirror_status_counts:
                logger.info("Mirror sync statuses: %s", counts)
            app.state.mirror_status_counts = counts

        scheduler = build_scheduler(mirror, publish)
        scheduler.start()
        try:
            yield
        finally:
            scheduler.shutdown(wait=False)

    app = FastAPI(
        title="PetChain Anchoring API",
        description="Medical record anchoring on Stellar via IPFS",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(
        sync_routes.router, prefix="/blockchain-sync", tags=["blockchain-sync"]
    )

    return app


# Module-level app instance for uvicorn
app = create_app()
