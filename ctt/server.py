# -*- coding: utf-8 -*-
"""
CTT Server

Local FastAPI application hosting the sync admin API and the background
sync service.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI

from ctt import __version__
from ctt.api import router as sync_router
from ctt.db import initialize_database
from ctt.settings import settings
from ctt.sync import SyncManager, init_sync_service, stop_sync_service

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(db_path: str = None, start_service: bool = True) -> FastAPI:
    """
    Args:
        db_path: SQLite database path (settings.db_path if omitted)
        start_service: Start the background sync thread
    """
    db_path = db_path or settings.db_path

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        initialize_database(db_path)
        manager = SyncManager(db_path)
        app.state.sync_manager = manager
        app.state.sync_service = init_sync_service(manager, start=start_service)
        logger.info(f"CTT server started (db={db_path})")
        try:
            yield
        finally:
            stop_sync_service()
            app.state.sync_service = None
            logger.info("CTT server stopped")

    app = FastAPI(title="CTT", version=__version__, lifespan=lifespan)
    app.include_router(sync_router)

    @app.get("/api/health")
    def health_check():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


app = create_app()


# ============================================================
# MAIN
# ============================================================

def main():
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    main()
