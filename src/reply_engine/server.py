"""FastAPI application exposing the reply engine to UI collaborators."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import load_config
from .engine import ReplyEngine
from .errors import NoApiConfig, TransportError

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class SendRequest(BaseModel):
    text: str = Field(..., min_length=1)
    kind: str = Field(default="text", pattern="^(text|voice)$")


class SummarySettingsRequest(BaseModel):
    enabled: Optional[bool] = None
    interval: Optional[int] = Field(default=None, ge=1, le=20)


def _redacted(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(cfg)
    api = dict(out.get("api") or {})
    if api.get("api_key"):
        api["api_key"] = "***"
    out["api"] = api
    return out


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    engine: Optional[ReplyEngine] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    engine = engine or ReplyEngine.from_config(cfg)

    app = FastAPI(title="Reply Engine", version="0.1.0")
    app.state.engine = engine
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NoApiConfig)
    async def _no_api(request: Request, exc: NoApiConfig) -> JSONResponse:
        return JSONResponse(status_code=428, content={"error": "configure_api", "detail": str(exc)})

    @app.exception_handler(TransportError)
    async def _transport(request: Request, exc: TransportError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"error": "transport", "detail": str(exc)})

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "api_configured": engine.client.config.configured,
            "emoji_catalog": len(engine.catalog),
        }

    @app.get("/config")
    def get_config() -> JSONResponse:
        return JSONResponse(_redacted(cfg))

    # Every route that touches the engine is async: the engine, its timers and
    # its playback all belong to the event loop.
    # --------- messages ----------
    @app.post("/conversations/{cid}/messages")
    async def send(cid: str, req: SendRequest) -> Dict[str, Any]:
        text = req.text.strip()
        if not text:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")
        appended = engine.send_user_message(cid, text, kind=req.kind)
        return {"messages": [m.to_dict() for m in appended], "state": engine.state_view(cid)}

    @app.get("/conversations/{cid}/messages")
    async def list_messages(cid: str, since_version: Optional[int] = None) -> Dict[str, Any]:
        version = engine.bus.version(cid)
        if since_version is not None and since_version == version:
            return {"version": version, "changed": False, "messages": []}
        return {
            "version": version,
            "changed": True,
            "messages": [m.to_dict() for m in engine.log.messages(cid)],
        }

    @app.delete("/conversations/{cid}/messages")
    async def clear(cid: str) -> Dict[str, Any]:
        engine.clear_history(cid)
        return {"ok": True, "state": engine.state_view(cid)}

    # --------- turns ----------
    @app.post("/conversations/{cid}/reply")
    async def reply_now(cid: str) -> Dict[str, Any]:
        outcome = await engine.request_reply_now(cid)
        return outcome.to_dict()

    @app.post("/conversations/{cid}/regenerate")
    async def regenerate(cid: str) -> Dict[str, Any]:
        outcome = await engine.regenerate(cid)
        return outcome.to_dict()

    @app.get("/conversations/{cid}/state")
    async def state(cid: str) -> Dict[str, Any]:
        return engine.state_view(cid)

    @app.post("/conversations/{cid}/open")
    async def open_conversation(cid: str) -> Dict[str, Any]:
        engine.open(cid)
        return {"ok": True}

    @app.post("/conversations/{cid}/close")
    async def close_conversation(cid: str) -> Dict[str, Any]:
        engine.close(cid)
        return {"ok": True}

    # --------- memory ----------
    @app.get("/conversations/{cid}/snapshots")
    async def snapshots(cid: str) -> Dict[str, Any]:
        return {"snapshots": [s.to_dict() for s in engine.summarizer.snapshots(cid)]}

    @app.post("/conversations/{cid}/snapshots")
    async def create_snapshot(cid: str) -> Dict[str, Any]:
        snap = engine.summarize_now(cid)
        if snap is None:
            raise HTTPException(status_code=409, detail="No new dialogue since the last snapshot.")
        return snap.to_dict()

    @app.get("/settings/summary")
    async def get_summary_settings() -> Dict[str, Any]:
        return engine.summarizer.settings.to_dict()

    @app.put("/settings/summary")
    async def put_summary_settings(req: SummarySettingsRequest) -> Dict[str, Any]:
        return engine.summarizer.update_settings(enabled=req.enabled, interval=req.interval).to_dict()

    return app
