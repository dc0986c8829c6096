# -*- coding: utf-8 -*-
"""
Sync admin API

Mounted at /api/sync. Every route requires an admin bearer token.
"""

import logging
from typing import Optional, Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from ctt.auth import require_admin
from ctt.sync import SyncManager, SyncState, ConfigCodecError, mask_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"], dependencies=[Depends(require_admin)])


# ============================================================
# REQUEST MODELS
# ============================================================

class ConfigUpdateRequest(BaseModel):
    enabled: Optional[bool] = None
    remote_endpoint: Optional[str] = None
    restricted_key: Optional[str] = None
    elevated_key: Optional[str] = None
    database_url: Optional[str] = None


class InitialSyncRequest(BaseModel):
    direction: Literal["push", "pull", "merge"]


class ImportConfigRequest(BaseModel):
    export_string: str


# ============================================================
# DEPENDENCIES
# ============================================================

def get_sync_manager(request: Request) -> SyncManager:
    manager = getattr(request.app.state, "sync_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Sync engine is not running")
    return manager


def _trigger(request: Request, manager: SyncManager):
    service = getattr(request.app.state, "sync_service", None)
    if service is not None:
        return service.trigger()
    return manager.sync_now()


# ============================================================
# CONFIG
# ============================================================

@router.get("/config")
def get_config(manager: SyncManager = Depends(get_sync_manager)):
    """Current config, secrets masked"""
    return manager.get_config_for_display()


@router.put("/config")
def update_config(request: ConfigUpdateRequest,
                  manager: SyncManager = Depends(get_sync_manager)):
    partial = request.model_dump(exclude_unset=True, exclude_none=True)
    try:
        config = manager.update_config(partial)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "instance_id": config.instance_id}


@router.post("/config/export")
def export_config(manager: SyncManager = Depends(get_sync_manager)):
    try:
        return {"export_string": manager.export_config()}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/config/import")
def import_config(request: ImportConfigRequest,
                  manager: SyncManager = Depends(get_sync_manager)):
    try:
        portable = manager.import_config(request.export_string)
    except ConfigCodecError as e:
        logger.warning(f"Config import rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "success": True,
        "config": {
            "remote_endpoint": portable.remote_endpoint,
            "restricted_key": mask_key(portable.restricted_key),
            "elevated_key": mask_key(portable.elevated_key),
            "database_url": mask_key(portable.database_url),
        },
    }


# ============================================================
# REMOTE
# ============================================================

@router.post("/test-connection")
def test_connection(manager: SyncManager = Depends(get_sync_manager)):
    ok, message = manager.test_connection()
    return {"success": ok, "message": message}


@router.post("/setup-schema")
def setup_schema(manager: SyncManager = Depends(get_sync_manager)):
    ok, message = manager.verify_schema()
    return {"success": ok, "message": message}


# ============================================================
# SYNC
# ============================================================

@router.get("/status")
def get_status(manager: SyncManager = Depends(get_sync_manager)):
    return manager.get_status().to_dict()


@router.post("/sync")
def sync_now(request: Request, manager: SyncManager = Depends(get_sync_manager)):
    result = _trigger(request, manager)

    if result.busy:
        raise HTTPException(status_code=409, detail="Sync is already in progress")
    if not result.success and result.state == SyncState.DISABLED:
        raise HTTPException(status_code=400, detail=result.errors[0] if result.errors else "Sync is disabled")
    if not result.success:
        raise HTTPException(status_code=502, detail=result.errors[0] if result.errors else "Sync failed")

    return {"success": True, "pushed": result.pushed, "pulled": result.pulled}


@router.post("/initial-sync")
def initial_sync(request: InitialSyncRequest,
                 manager: SyncManager = Depends(get_sync_manager)):
    if not manager.store.is_configured():
        raise HTTPException(status_code=400, detail="Sync is not configured")

    result = manager.initial_sync(request.direction)

    if result.busy:
        raise HTTPException(status_code=409, detail="Sync is already in progress")
    if not result.success:
        raise HTTPException(status_code=502, detail=result.errors[0] if result.errors else "Initial sync failed")

    return {
        "success": True,
        "message": f"Initial sync ({request.direction}) completed",
        "stats": {"pushed": result.pushed, "pulled": result.pulled},
    }
