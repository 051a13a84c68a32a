from __future__ import annotations

from datetime import datetime, timezone
from threading import RLock
from typing import Any, Dict, List, Optional
import logging
import threading

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from ..core.errors import EntityNotFoundError, UrlUnavailableError
from ..core.sync_manager import SyncAlreadyRunning
from ..core.url_cache import SUPPORTED_KINDS
from ..models.catalog import CategoryRecord
from .runtime import DriveIndexRuntime, build_runtime

logger = logging.getLogger(__name__)

SYNC_SCOPES = ("all", "movies", "series", "animes", "category", "series_details")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _serialize_category(category: CategoryRecord) -> Dict[str, Any]:
    return {
        "id": category.category_id,
        "name": category.name,
        "path": category.path,
        "kind": category.kind,
        "advertisedCount": category.advertised_count,
    }


class SyncRequest(BaseModel):
    scope: str = "all"
    path: Optional[str] = None
    paths: Optional[List[str]] = None
    seriesId: Optional[int] = None
    contentType: Optional[str] = None
    details: bool = True


def create_app(runtime: Optional[DriveIndexRuntime] = None) -> FastAPI:
    state: Dict[str, Any] = {"runtime": runtime}
    state_lock = RLock()

    def get_runtime() -> DriveIndexRuntime:
        # Built on first use so importing the module needs no configured mirror.
        with state_lock:
            if state["runtime"] is None:
                state["runtime"] = build_runtime()
            return state["runtime"]

    def _check_kind(kind: str) -> None:
        if kind not in SUPPORTED_KINDS:
            raise HTTPException(status_code=400, detail=f"Unsupported kind: {kind}")

    def _sync_target(rt: DriveIndexRuntime, body: SyncRequest):
        sync = rt.sync_manager
        if body.scope == "all":
            return sync.sync_all
        if body.scope == "movies":
            return lambda: sync.sync_movies(body.path)
        if body.scope == "series":
            return lambda: sync.sync_series(body.paths, details=body.details)
        if body.scope == "animes":
            return lambda: sync.sync_animes(body.paths, details=body.details)
        if body.scope == "category":
            if not body.path:
                raise HTTPException(status_code=400, detail="path is required for a category sync.")
            return lambda: sync.sync_category(body.path)
        if body.seriesId is not None:
            return lambda: sync.sync_series_details(body.seriesId)
        return lambda: sync.sync_all_series_details(body.contentType)

    app = FastAPI(title="driveindex API", version="1.0.0")

    @app.get("/health")
    def health() -> Dict:
        return {"ok": True, "time": _utc_now_iso()}

    @app.get("/api/endpoints")
    def list_endpoints() -> Dict:
        rt = get_runtime()
        return {"endpoints": [e.to_dict() for e in rt.endpoint_manager.status()]}

    @app.post("/api/endpoints/reset")
    def reset_endpoints() -> Dict:
        rt = get_runtime()
        rt.endpoint_manager.reset_all()
        return {"ok": True, "endpoints": [e.to_dict() for e in rt.endpoint_manager.status()]}

    @app.get("/api/categories")
    def list_categories(kind: Optional[str] = Query(default=None)) -> Dict:
        rt = get_runtime()
        return {"categories": [_serialize_category(c) for c in rt.store.list_categories(kind)]}

    @app.post("/api/sync", status_code=202)
    def start_sync(body: SyncRequest) -> Dict:
        if body.scope not in SYNC_SCOPES:
            raise HTTPException(status_code=400, detail=f"Unknown scope: {body.scope}")
        rt = get_runtime()
        if rt.sync_manager.is_running:
            raise HTTPException(status_code=409, detail="A sync pass is already running.")
        target = _sync_target(rt, body)

        def run():
            try:
                target()
            except SyncAlreadyRunning as e:
                logger.warning("Sync %s not started: %s", body.scope, e)
            except EntityNotFoundError as e:
                logger.warning("Sync %s skipped: %s", body.scope, e)
            except Exception as e:
                logger.error("Background sync %s failed: %s", body.scope, e)

        threading.Thread(target=run, name=f"sync-{body.scope}", daemon=True).start()
        return {"ok": True, "scope": body.scope, "startedAt": _utc_now_iso()}

    @app.get("/api/sync/status")
    def sync_status() -> Dict:
        return get_runtime().sync_manager.get_status()

    @app.get("/api/streams/{kind}/{entity_id}")
    def stream_url(kind: str, entity_id: int) -> Dict:
        _check_kind(kind)
        rt = get_runtime()
        try:
            url = rt.url_cache.get(entity_id, kind)
        except EntityNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except UrlUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"kind": kind, "id": entity_id, "url": url}

    @app.delete("/api/streams/{kind}/{entity_id}")
    def invalidate_stream(kind: str, entity_id: int) -> Dict:
        _check_kind(kind)
        removed = get_runtime().url_cache.invalidate(entity_id, kind)
        return {"ok": True, "removed": removed}

    return app


app = create_app()
