"""Build Helper web console and relay API powered by FastAPI."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from fastapi.templating import Jinja2Templates

from buildhelper import __version__
from buildhelper.config import build_default_config
from buildhelper.errors import RelayError
from buildhelper.models import ConsoleSettings, TriggerRequest
from buildhelper.relay import BuildServerRelay

logger = logging.getLogger(__name__)


def _templates_dir() -> Path:
    return Path(__file__).resolve().parent.parent / "templates"


def _page_config(config: dict[str, Any]) -> dict[str, Any]:
    polling = config.get("polling", {})
    defaults = ConsoleSettings().to_dict()
    defaults.pop("username", None)
    defaults.pop("apiToken", None)
    return {
        "version": __version__,
        "queue_interval_ms": int(float(polling.get("queue_interval_seconds", 3)) * 1000),
        "log_interval_ms": int(float(polling.get("log_interval_seconds", 5)) * 1000),
        "log_job_name": str(config.get("logs", {}).get("job_name", "")),
        "defaults": defaults,
    }


def create_app(config: Optional[dict[str, Any]] = None, relay: Optional[BuildServerRelay] = None) -> FastAPI:
    """Create the FastAPI app serving the console page and the relay API."""
    config = config or build_default_config()
    relay = relay or BuildServerRelay.from_config(config)
    page_config = _page_config(config)

    app = FastAPI(title="Build Helper", version=__version__)
    templates = Jinja2Templates(directory=str(_templates_dir()))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.get("server", {}).get("cors_origins", ["*"])),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.get("/", response_class=HTMLResponse)
    async def console_page(request: Request) -> HTMLResponse:
        return templates.TemplateResponse(
            request,
            "console.html.j2",
            {"app_version": __version__, "page_config": page_config},
        )

    @app.get("/api/config")
    async def api_config() -> dict[str, Any]:
        return page_config

    # Relay endpoints are plain functions: urllib blocks, so they run in the threadpool.
    @app.post("/api/trigger")
    def api_trigger(payload: Any = Body(None)) -> dict[str, str]:
        request = TriggerRequest.from_payload(payload)
        return {"queueUrl": relay.trigger_build(request)}

    @app.get("/api/queue")
    def api_queue(
        queueUrl: str = Query("", description="Queue item URL returned by trigger"),
        username: str = Query(""),
        apiToken: str = Query(""),
    ) -> JSONResponse:
        data = relay.fetch_queue_status(queueUrl, username, apiToken)
        return JSONResponse(content=data)

    @app.get("/api/logs/{build_id}", response_class=PlainTextResponse)
    def api_logs(
        build_id: str,
        username: str = Query(""),
        apiToken: str = Query(""),
    ) -> PlainTextResponse:
        return PlainTextResponse(relay.fetch_build_log(build_id, username, apiToken))

    return app
