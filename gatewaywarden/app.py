"""Local control API for gatewaywarden.

This module exposes the controller over JSON/HTTP and wires up:
- the gateway lifecycle controller and its background loops,
- the settings store and its watchdog reload task,
- logging setup and the CLI entry point.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .config import ControllerConfig, load_config
from .controller import GatewayController, OperationResult, StartResult
from .errors import ControllerBusy, StartOutcome
from .logging_utils import setup_logging
from .settings import GatewaySettings, SettingsStore
from .settings_reload import SettingsReloadWatcher
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class DistroRequest(BaseModel):
    distro: str | None = None


class StartRequest(BaseModel):
    distro: str | None = None
    port: Any = None
    verify: bool = False


class InstallRequest(BaseModel):
    distro: str | None = None
    port: Any = None


class MonitorRequest(BaseModel):
    port: Any = None


class TokenRequest(BaseModel):
    text: str | None = None


class TokenWatchRequest(BaseModel):
    enabled: bool = True


def _service_bind_addr(service_base_url: str) -> tuple[str, int]:
    """Parse bind host/port from service_base_url."""
    parsed = urlparse(service_base_url)
    if not parsed.hostname or parsed.port is None:
        raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:18790")
    return parsed.hostname, parsed.port


def _operation_payload(result: OperationResult) -> dict[str, Any]:
    return {"ok": result.ok, "message": result.message, "canceled": result.canceled, **result.data}


def _start_payload(result: StartResult) -> dict[str, Any]:
    return {"ok": result.ok, "outcome": result.outcome.value, "message": result.message, "port": result.port}


def build_controller(cfg: ControllerConfig) -> GatewayController:
    """Create the controller with a settings store at the configured path."""
    assert cfg.settings_path is not None
    return GatewayController(cfg, settings_store=SettingsStore(cfg.settings_path))


def create_app(
    config_path: str | None = None,
    *,
    cfg: ControllerConfig | None = None,
    controller: GatewayController | None = None,
    watch_settings: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    cfg = cfg or (controller.cfg if controller is not None else load_config(config_path))
    assert cfg.logging is not None
    setup_logging(cfg.logging)
    ctl = controller or build_controller(cfg)
    reload_task: asyncio.Task[None] | None = None

    async def on_settings_reload(settings: GatewaySettings) -> None:
        ctl.apply_settings(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        nonlocal reload_task
        await ctl.restore_settings()
        if watch_settings and ctl.settings_store is not None:
            watcher = SettingsReloadWatcher(store=ctl.settings_store, on_reload=on_settings_reload, logger=LOG)
            reload_task = asyncio.create_task(watcher.run_forever())
        try:
            yield
        finally:
            if reload_task:
                reload_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reload_task
            await ctl.close()

    app = FastAPI(title="gatewaywarden", version="0.1.0", lifespan=lifespan)
    app.state.controller = ctl

    async def run_operation(status: str, action: Callable[[Any], Awaitable[T]]) -> T:
        try:
            with ctl.operation(status) as token:
                return await action(token)
        except ControllerBusy as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    def require_distro(value: str | None) -> str:
        distro = value or ctl.distro
        if not distro:
            raise HTTPException(status_code=400, detail="Distro required.")
        return distro

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse(
            {
                "service": "gatewaywarden",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "gateway_running": ctl.gateway_running,
            }
        )

    @app.get("/status")
    async def status() -> JSONResponse:
        return JSONResponse(ctl.snapshot())

    @app.get("/logs")
    async def logs(limit: int = 200) -> JSONResponse:
        return JSONResponse({"lines": ctl.events.lines(limit=max(0, limit))})

    @app.get("/distros")
    async def distros(requested: str | None = None) -> JSONResponse:
        result = await run_operation(
            "Checking WSL distros.",
            lambda token: ctl.check_distros(requested, token),
        )
        return JSONResponse(_operation_payload(result))

    @app.post("/install")
    async def install(body: InstallRequest) -> JSONResponse:
        LOG.debug("install request payload=%s", to_bounded_json(body.model_dump()))
        distro = require_distro(body.distro)
        result = await run_operation(
            f"Installing {ctl.commands.service}.",
            lambda token: ctl.install(distro, body.port, token),
        )
        return JSONResponse(_operation_payload(result))

    @app.post("/gateway/start")
    async def gateway_start(body: StartRequest) -> JSONResponse:
        LOG.debug("gateway start request payload=%s", to_bounded_json(body.model_dump()))
        port = body.port if body.port is not None else ctl.gateway_port
        result = await run_operation(
            "Starting gateway.",
            lambda token: ctl.start(body.distro or ctl.distro or "", port, token, verify_reachable=body.verify),
        )
        if result.outcome is StartOutcome.INVALID_INPUT:
            raise HTTPException(status_code=400, detail=result.message)
        return JSONResponse(_start_payload(result))

    @app.post("/gateway/stop")
    async def gateway_stop(body: DistroRequest) -> JSONResponse:
        distro = require_distro(body.distro)
        stopped = await run_operation("Stopping gateway.", lambda token: ctl.stop(distro, token))
        return JSONResponse({"ok": stopped, "message": ctl.events.status})

    @app.post("/operation/cancel")
    async def operation_cancel() -> JSONResponse:
        return JSONResponse({"ok": ctl.cancel_operation()})

    @app.post("/monitor")
    async def monitor(body: MonitorRequest) -> JSONResponse:
        if not ctl.add_monitor(body.port):
            raise HTTPException(status_code=400, detail="Invalid monitor port. Enter 1~65535.")
        return JSONResponse(ctl.snapshot())

    @app.post("/monitor/toggle")
    async def monitor_toggle() -> JSONResponse:
        if ctl.store.get() is None:
            raise HTTPException(status_code=400, detail="Set a monitor port first.")
        return JSONResponse({"monitoring": ctl.toggle_monitoring()})

    @app.post("/token")
    async def token(body: TokenRequest) -> JSONResponse:
        found = ctl.paste_token(body.text)
        if found is None:
            raise HTTPException(status_code=400, detail="No gateway token found.")
        return JSONResponse({"ok": True, "token": found})

    @app.post("/token/watch")
    async def token_watch(body: TokenWatchRequest) -> JSONResponse:
        if body.enabled:
            ctl.start_token_watch()
        else:
            ctl.stop_token_watch()
        return JSONResponse({"watching": body.enabled})

    @app.post("/token/refresh")
    async def token_refresh(body: DistroRequest) -> JSONResponse:
        distro = require_distro(body.distro)
        result = await run_operation(
            "Reading gateway token from configuration.",
            lambda token: ctl.refresh_token_from_config(distro, token),
        )
        return JSONResponse(_operation_payload(result))

    return app


def main() -> None:
    """CLI entry point that validates configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        """Print startup error and terminate process."""
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="gatewaywarden gateway controller")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    try:
        app = create_app(cfg=cfg)
    except Exception as exc:
        fail(f"Failed to create app: {exc}")

    try:
        host, port = _service_bind_addr(cfg.service_base_url)
        uvicorn.run(app, host=host, port=port)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
