"""
server.py — Smart Bookmarks FastAPI server.

Endpoints
---------
  GET  /health                         — liveness check {status, ollama}

  Organize job
  POST /api/organize/start             — 202-style ack; 409 if running, needs reset or failed
  GET  /api/organize/state             — persisted job state + last progress snapshot
  POST /api/organize/reset             — back to idle (cancels a running job)
  GET  /api/organize/events            — SSE progress stream
  GET  /api/stats

  Bookmarks
  POST /api/bookmarks/add              — classify + file one url
  POST /api/bookmarks/{id}/category    — manual override
  GET  /api/view                       — display category → {count, items}
  POST /api/duplicates/remove
  POST /api/import/netscape
  GET  /api/export/netscape

  Categories
  GET  /api/categories
  PUT  /api/categories                 — bulk replace with reconciliation
  POST /api/categories/{slug}/rename

  Settings
  GET  /api/settings | POST /api/settings
  GET  /api/settings/export | POST /api/settings/import

One Organizer (and so one job engine) per process; run with a single worker.
CORS: allow all origins (local use only).
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Body, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel

from config import cfg, ollama_available
from smartmarks.db import get_connection, get_stats
from smartmarks.organizer import Organizer
from smartmarks.tree import TreeError

logging.basicConfig(
    level=getattr(logging, cfg.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_SSE_KEEPALIVE = 15.0
_TERMINAL = ("done", "failed", "idle")


# ---------------------------------------------------------------------------
# Organizer dependency
# ---------------------------------------------------------------------------

_organizer: Organizer | None = None


def get_organizer() -> Organizer:
    """FastAPI dependency: the process-wide Organizer (lazy)."""
    global _organizer
    if _organizer is None:
        cfg.ensure_dirs()
        _organizer = Organizer(get_connection(cfg.get_db_path()), cfg)
    return _organizer


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg.ensure_dirs()
    if cfg.ollama_enable and not ollama_available(cfg.ollama_base_url):
        logger.warning("Ollama not reachable at %s — ollama provider will give no opinion",
                       cfg.ollama_base_url)
    logger.info("Smart Bookmarks server ready on %s:%s", cfg.server_host, cfg.server_port)
    yield
    logger.info("Smart Bookmarks server shutting down")


# ---------------------------------------------------------------------------
# App + CORS
# ---------------------------------------------------------------------------

app = FastAPI(title="Smart Bookmarks", version="2.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class StartRequest(BaseModel):
    strategy: str | None = None
    reclassify: bool = False


class NewCategory(BaseModel):
    name: str
    emoji: str | None = None
    parent: str | None = None
    slug: str | None = None


class AddBookmarkRequest(BaseModel):
    url: str
    title: str = ""
    category: str | None = None
    new_category: NewCategory | None = None


class CategoryUpdateRequest(BaseModel):
    category: str
    tags: list[str] | str | None = None
    categories: list[str] | None = None


class RenameRequest(BaseModel):
    name: str
    emoji: str | None = None


class NetscapeImportRequest(BaseModel):
    html: str


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/health")
async def health() -> dict[str, Any]:
    ok = ollama_available(cfg.ollama_base_url)
    return {"status": "ok", "ollama": ok}


# ---------------------------------------------------------------------------
# Organize job
# ---------------------------------------------------------------------------

@app.post("/api/organize/start")
async def organize_start(
    req: StartRequest | None = None,
    org: Organizer = Depends(get_organizer),
) -> JSONResponse:
    req = req or StartRequest()
    if req.reclassify and org.state.load_state().status != "running":
        org.mark_stale()
    try:
        result = await org.start_job(req.strategy)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    code = 409 if result["status"] in ("already_running", "needs_reset", "failed") else 200
    return JSONResponse(result, status_code=code)


@app.get("/api/organize/state")
async def organize_state(org: Organizer = Depends(get_organizer)) -> dict[str, Any]:
    return {"state": org.get_job_state(), "progress": org.get_progress()}


@app.post("/api/organize/reset")
async def organize_reset(org: Organizer = Depends(get_organizer)) -> dict[str, Any]:
    return org.reset_job_state()


def _sse(payload: dict[str, Any]) -> str:
    return f"event: progress\ndata: {json.dumps(payload)}\n\n"


@app.get("/api/organize/events")
async def organize_events(org: Organizer = Depends(get_organizer)) -> StreamingResponse:
    """
    Snapshot first, then live events until the job reaches a terminal status.
    When no job is running the stream closes right after the snapshot.
    """
    async def _stream() -> AsyncIterator[str]:
        snapshot = org.get_progress()
        yield _sse(snapshot)
        if org.state.load_state().status != "running":
            return
        q = org.channel.subscribe()
        try:
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=_SSE_KEEPALIVE)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield _sse(event)
                if event.get("status") in _TERMINAL:
                    return
        finally:
            org.channel.unsubscribe(q)

    return StreamingResponse(_stream(), media_type="text/event-stream",
                             headers={"Cache-Control": "no-cache"})


@app.get("/api/stats")
async def stats(org: Organizer = Depends(get_organizer)) -> dict[str, Any]:
    return {**org.get_stats(), "tree": get_stats(org.conn)}


# ---------------------------------------------------------------------------
# Bookmarks
# ---------------------------------------------------------------------------

@app.post("/api/bookmarks/add")
async def bookmarks_add(
    req: AddBookmarkRequest,
    org: Organizer = Depends(get_organizer),
) -> dict[str, Any]:
    if not req.url.strip():
        raise HTTPException(status_code=400, detail="url is required")
    override: dict[str, Any] = {}
    if req.category:
        override["category"] = req.category
    elif req.new_category:
        override["new_category"] = req.new_category.model_dump()
    try:
        return await org.classify_and_place(req.url, req.title, override)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/api/bookmarks/{bookmark_id}/category")
async def bookmarks_category(
    bookmark_id: str,
    req: CategoryUpdateRequest,
    org: Organizer = Depends(get_organizer),
) -> dict[str, Any]:
    try:
        return org.update_item_category(bookmark_id, req.category, req.tags, req.categories)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Bookmark '{bookmark_id}' not found")
    except (ValueError, TreeError) as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/view")
async def view(org: Organizer = Depends(get_organizer)) -> dict[str, Any]:
    return org.get_organized_view()


@app.post("/api/duplicates/remove")
async def duplicates_remove(org: Organizer = Depends(get_organizer)) -> dict[str, Any]:
    return org.remove_duplicates()


@app.post("/api/import/netscape")
async def import_netscape(
    req: NetscapeImportRequest,
    org: Organizer = Depends(get_organizer),
) -> dict[str, Any]:
    return org.import_bookmarks(req.html)


@app.get("/api/export/netscape")
async def export_netscape(org: Organizer = Depends(get_organizer)) -> PlainTextResponse:
    return PlainTextResponse(
        org.export_bookmarks(),
        media_type="text/html",
        headers={"Content-Disposition": "attachment; filename=bookmarks.html"},
    )


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

@app.get("/api/categories")
async def categories(org: Organizer = Depends(get_organizer)) -> list[dict[str, Any]]:
    return org.get_categories()


@app.put("/api/categories")
async def categories_update(
    payload: Any = Body(...),
    org: Organizer = Depends(get_organizer),
) -> dict[str, Any]:
    try:
        return org.update_taxonomy(payload)
    except (ValueError, TreeError) as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/api/categories/{slug}/rename")
async def categories_rename(
    slug: str,
    req: RenameRequest,
    org: Organizer = Depends(get_organizer),
) -> dict[str, Any]:
    try:
        return org.rename_category(slug, req.name, req.emoji)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Category '{slug}' not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@app.get("/api/settings")
async def settings_get(org: Organizer = Depends(get_organizer)) -> dict[str, Any]:
    return org.get_settings()


@app.post("/api/settings")
async def settings_save(
    updates: dict[str, Any],
    org: Organizer = Depends(get_organizer),
) -> dict[str, Any]:
    try:
        return org.save_settings(updates)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/settings/export")
async def settings_export(org: Organizer = Depends(get_organizer)) -> dict[str, Any]:
    return org.export_settings()


@app.post("/api/settings/import")
async def settings_import(
    data: dict[str, Any],
    org: Organizer = Depends(get_organizer),
) -> dict[str, Any]:
    try:
        return {"imported": org.import_settings(data)}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host=cfg.server_host,
        port=cfg.server_port,
        workers=1,        # one job engine per process
        reload=False,
    )
