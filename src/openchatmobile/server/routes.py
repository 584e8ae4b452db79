"""All HTTP and WebSocket endpoints of the relay server."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import FileResponse, JSONResponse

from openchatmobile.protocol import (
    EP_CHAT,
    EP_HEALTH,
    EP_MODELS,
    EP_UPLOAD,
    UPLOAD_MAX_BYTES,
    UPLOAD_PREVIEW_CHARS,
    WS_RELAY,
    WS_ROOT,
)
from openchatmobile.server.inference import UpstreamError
from openchatmobile.server.models import list_models
from openchatmobile.server.schemas import ChatRequest
from openchatmobile.server.streaming import relay_connection

log = logging.getLogger(__name__)

router = APIRouter()


# --- API ---------------------------------------------------------------------

@router.get(EP_HEALTH)
async def health(request: Request):
    ctx = request.app.state.ctx
    return {
        "status": "ok",
        "llama": ctx.supervisor.state,
        "websocket": {
            "connected": len(ctx.registry),
            "port": ctx.config.port,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "config": ctx.config.public(),
    }


@router.post(EP_CHAT)
async def chat(body: ChatRequest, request: Request):
    ctx = request.app.state.ctx
    log.info(
        "chat request: %d chars, max_tokens=%d, temperature=%s",
        len(body.message), body.max_tokens, body.temperature,
    )
    try:
        data = await ctx.completions.complete(
            body.build_prompt(), body.max_tokens, body.temperature,
        )
    except UpstreamError as exc:
        log.error("chat error: %s", exc)
        return JSONResponse({"error": str(exc)}, status_code=500)

    tokens_used = data.get("tokens_used", data.get("tokens_predicted"))
    content = data.get("content", "")
    log.info("chat response: %d chars, tokens_used=%s", len(content or ""), tokens_used)
    return {"response": content, "tokens_used": tokens_used}


@router.post(EP_UPLOAD)
async def upload(request: Request):
    """Accept a raw file body and return a text preview.

    - File name in header ``x-filename`` (default ``upload.txt``)
    - ``x-file-size`` / ``x-file-type`` are informational only
    - Nothing is stored
    """
    filename = request.headers.get("x-filename", "upload.txt")
    declared = request.headers.get("x-file-size")
    if declared and declared.isdigit() and int(declared) > UPLOAD_MAX_BYTES:
        return JSONResponse({"error": "file too large"}, status_code=413)

    body = await request.body()
    if len(body) > UPLOAD_MAX_BYTES:
        return JSONResponse({"error": "file too large"}, status_code=413)

    content = body.decode("utf-8", errors="replace")
    log.info(
        "file upload: %s (%d chars, type=%s)",
        filename, len(content), request.headers.get("x-file-type", "unknown"),
    )
    return {
        "success": True,
        "filename": filename,
        "size": len(content),
        "content": content[:UPLOAD_PREVIEW_CHARS],
    }


@router.get(EP_MODELS)
async def models(request: Request):
    return {"models": list_models(request.app.state.ctx.config.models_dir)}


@router.websocket(WS_RELAY)
@router.websocket(WS_ROOT)
async def relay(ws: WebSocket):
    await relay_connection(ws, ws.app.state.ctx)


# --- Frontend ----------------------------------------------------------------

frontend_router = APIRouter()


@frontend_router.get("/{path:path}", include_in_schema=False)
async def frontend(path: str, request: Request):
    """Serve the single-page app: real files as-is, everything else index.html."""
    root = Path(request.app.state.ctx.config.frontend_dir).resolve()
    target = (root / path).resolve()
    if path and target.is_file() and target.is_relative_to(root):
        return FileResponse(target)
    index = root / "index.html"
    if not index.is_file():
        return JSONResponse({"error": "frontend not found"}, status_code=404)
    return FileResponse(index)
