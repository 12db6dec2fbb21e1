"""Gateway lifecycle controller.

This module orchestrates the supervised gateway through the bridge:
- install and verify the service inside a distro,
- start the gateway, racing early failure against a grace period,
- stop it, reset in-memory state and stop the health loop,
- track the dashboard token emitted on the gateway's output.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterator

from .cancellation import CancellationToken
from .clipboard import BridgeClipboardReader, ClipboardReader, ClipboardTokenWatch
from .commands import (
    BridgeCommandBuilder,
    format_command_for_log,
    normalize_distro_name,
    parse_distro_lines,
    parse_port,
    verify_version,
)
from .config import ControllerConfig
from .errors import ControllerBusy, OperationCancelled, SpawnFailure, StartOutcome
from .events import EventFeed
from .health import HealthProber, ProbeFn, wait_until_healthy
from .monitor import HealthMonitorLoop
from .process import CommandResult, ProcessRunner
from .settings import GatewaySettings, SettingsStore
from .state import MonitorState, MonitorStateStore
from .status import (
    build_monitor_status,
    build_monitor_summary,
    monitor_icon,
    monitor_tone,
    status_icon,
    status_tone,
)
from .text_rules import detect_token_missing, extract_token, extract_token_or_candidate, is_port_in_use_text
from .utils import normalize_log_text

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartResult:
    """Classified outcome of `GatewayController.start`."""

    outcome: StartOutcome
    message: str
    port: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome.ok

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True)
class OperationResult:
    """Outcome of install/check/token operations."""

    ok: bool
    message: str
    canceled: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.ok


def _port_in_use_message(port: int) -> str:
    return f"Requested port {port} is already in use. Choose a different port and start again."


class GatewayController:
    """Owns the gateway process, the monitor state and the background loops."""

    def __init__(
        self,
        cfg: ControllerConfig,
        *,
        runner: ProcessRunner | None = None,
        prober: HealthProber | None = None,
        probe: ProbeFn | None = None,
        store: MonitorStateStore | None = None,
        events: EventFeed | None = None,
        settings_store: SettingsStore | None = None,
        clipboard_reader: ClipboardReader | None = None,
    ) -> None:
        self.cfg = cfg
        self.timings = cfg.timings
        assert self.timings is not None
        self.bridge = cfg.bridge_executable
        self.runner = runner or ProcessRunner()
        self.commands = BridgeCommandBuilder(service=cfg.service_command, installer_url=cfg.installer_url)
        self._owns_prober = prober is None
        self.prober = prober or HealthProber(
            paths=tuple(cfg.health_paths or ()),
            timeout_seconds=self.timings.probe_timeout_seconds,
        )
        self._probe: ProbeFn = probe or self.prober.probe_once
        self.store = store or MonitorStateStore()
        self.events = events or EventFeed()
        self.settings_store = settings_store
        self.health_loop = HealthMonitorLoop(
            self.store,
            self._probe,
            self.events,
            interval_seconds=self.timings.health_interval_seconds,
        )
        self.token_watch = ClipboardTokenWatch(
            self.store,
            clipboard_reader or BridgeClipboardReader(self.runner, cfg.clipboard_command),
            self._on_clipboard_token,
            self.events,
            duration_seconds=self.timings.clipboard_watch_seconds,
            poll_interval_seconds=self.timings.clipboard_poll_seconds,
        )

        self.distro: str | None = normalize_distro_name(cfg.distro) or None
        self.default_port: int = cfg.gateway_port or 0
        self.gateway_port: int = self.default_port
        self.gateway_running = False
        self.gateway_token: str | None = None
        self.busy = False
        self._command_task: asyncio.Task[CommandResult] | None = None
        self._command_token: CancellationToken | None = None
        self._operation_token: CancellationToken | None = None
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # User operations

    @contextlib.contextmanager
    def operation(self, status: str) -> Iterator[CancellationToken]:
        """Run one user operation at a time; yields its cancellation token."""
        if self.busy:
            raise ControllerBusy("Another operation is in progress.")
        token = CancellationToken()
        self.busy = True
        self._operation_token = token
        self.events.set_status(status)
        self.events.log(status)
        try:
            yield token
        finally:
            self.busy = False
            self._operation_token = None

    def cancel_operation(self) -> bool:
        self.events.log("Cancel requested.")
        token = self._operation_token
        if token is None:
            return False
        self.events.set_status("Canceling...")
        token.cancel()
        return True

    def _persist(self, **changes: Any) -> None:
        if self.settings_store is None:
            return
        try:
            self.settings_store.update(**changes)
        except OSError as exc:
            LOG.warning("Failed to save settings: %s", exc)

    def apply_settings(self, settings: GatewaySettings) -> None:
        """Adopt persisted distro/port/token values."""
        if settings.distro:
            self.distro = normalize_distro_name(settings.distro) or self.distro
        if settings.gateway_port is not None and not self.gateway_running:
            self.gateway_port = settings.gateway_port
        if settings.gateway_token and settings.gateway_token != self.gateway_token:
            self.gateway_token = settings.gateway_token
            token = settings.gateway_token
            self.store.mutate(lambda state: state.with_token(token))

    async def restore_settings(self) -> GatewaySettings | None:
        """Load settings at start-up and re-register the saved monitor port."""
        if self.settings_store is None:
            return None
        settings = self.settings_store.load()
        self.apply_settings(settings)
        if settings.monitor_port is not None and self.store.get() is None:
            self.add_monitor(settings.monitor_port)
        return settings

    # ------------------------------------------------------------------
    # Distro check, install, verify

    async def check_distros(
        self,
        requested: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> OperationResult:
        """List distros and report whether the requested one exists.

        With no request the first listed distro is selected.
        """
        try:
            result = await self.runner.run(self.bridge, self.commands.list_distros_args(), cancel)
        except SpawnFailure as exc:
            self.events.log(f"Check failed: {exc}")
            return OperationResult(False, "Check failed.")
        if result.canceled:
            return OperationResult(False, "Check canceled.", canceled=True)
        if result.exit_code != 0:
            self.events.log(f"wsl -l -q exited with code {result.exit_code}.")
            if result.stderr.strip():
                self.events.log(f"wsl -l -q stderr: {normalize_log_text(result.stderr)}")
            return OperationResult(False, "Check failed.")

        distros = parse_distro_lines(result.stdout)
        if not distros:
            message = "No WSL distro found."
            self.events.log(message)
            return OperationResult(False, message, data={"distros": []})

        wanted = normalize_distro_name(requested)
        selected = next((name for name in distros if name.lower() == wanted.lower()), None) if wanted else distros[0]
        if selected is None:
            message = f"Distro '{wanted}' not found. Select from the list."
            self.events.log(message)
            return OperationResult(False, message, data={"distros": distros, "selected": None})

        self.distro = selected
        self._persist(distro=selected)
        message = f"Distro '{selected}' found."
        self.events.log(message)
        return OperationResult(True, message, data={"distros": distros, "selected": selected})

    async def verify(self, distro: str, cancel: CancellationToken | None = None) -> OperationResult:
        normalized = normalize_distro_name(distro)
        if not normalized:
            return OperationResult(False, "Distro required.")
        self.events.set_status(f"Verifying {self.commands.service} installation.")
        try:
            result = await self.runner.run(self.bridge, self.commands.verify_args(normalized), cancel)
        except SpawnFailure as exc:
            self.events.log(f"Verification failed: {exc}")
            return OperationResult(False, "Verification failed.")
        if result.canceled:
            return OperationResult(False, "Verification canceled.", canceled=True)
        ok, version, message = verify_version(result, self.commands.service)
        if not ok:
            self.events.log(message)
            return OperationResult(False, message)
        self.events.log(f"{self.commands.service} --version: {version}")
        return OperationResult(True, f"Installation complete. {version}.", data={"version": version})

    async def install(
        self,
        distro: str,
        port: Any = None,
        cancel: CancellationToken | None = None,
    ) -> OperationResult:
        """Install as root, verify, then start the gateway and wait until reachable."""
        normalized = normalize_distro_name(distro)
        if not normalized:
            self.events.log("Distro is required.")
            return OperationResult(False, "Distro required.")

        args = self.commands.install_args(normalized)
        self.events.log("Running install as root to avoid sudo prompts.")
        self.events.log(f"Running: {format_command_for_log(self.bridge, args)}")
        try:
            result = await self.runner.run(self.bridge, args, cancel)
        except SpawnFailure as exc:
            self.events.log(f"Install failed: {exc}")
            return self._finish_operation(OperationResult(False, "Install failed."))
        if result.canceled:
            return self._finish_operation(OperationResult(False, "Install canceled.", canceled=True))
        if result.exit_code != 0:
            self.events.log(f"Install script exited with code {result.exit_code}.")
            return self._finish_operation(OperationResult(False, "Install failed."))

        verified = await self.verify(normalized, cancel)
        if not verified.ok:
            return self._finish_operation(verified)

        self.distro = normalized
        message = verified.message
        start_port = parse_port(port if port is not None else self.gateway_port)
        if start_port is None:
            self.events.log("Invalid gateway port. Gateway auto-start skipped.")
            message += " Gateway auto-start skipped (invalid port)."
            return self._finish_operation(OperationResult(True, message, data=verified.data))

        started = await self.start(normalized, start_port, cancel, verify_reachable=True)
        if started.ok:
            message += f" Gateway started on port {start_port}."
        elif started.outcome is StartOutcome.CANCELED:
            return self._finish_operation(OperationResult(False, "Install canceled.", canceled=True))
        else:
            self.events.log("Install complete, but gateway start/health-check failed. You can start it manually.")
            message += " Gateway is not running."
        return self._finish_operation(OperationResult(True, message, data=verified.data))

    def _finish_operation(self, result: OperationResult) -> OperationResult:
        self.events.set_status(result.message)
        return result

    # ------------------------------------------------------------------
    # Gateway start / stop

    async def start(
        self,
        distro: str,
        port: Any,
        cancel: CancellationToken | None = None,
        *,
        verify_reachable: bool = False,
    ) -> StartResult:
        """Start the gateway and classify the outcome.

        `Idle -> Starting -> (EarlyFailure | Running) -> [VerifyingReachable ->
        (Healthy | Unreachable)]`. Every failure branch stops and forgets the
        streaming command.
        """
        normalized = normalize_distro_name(distro)
        if not normalized:
            return self._start_result(StartOutcome.INVALID_INPUT, "Cannot start gateway: distro is not set.")
        valid_port = parse_port(port)
        if valid_port is None:
            return self._start_result(StartOutcome.INVALID_INPUT, "Invalid gateway port. Enter 1~65535.")

        token = cancel or CancellationToken()
        self.gateway_token = None
        await self._stop_stream()

        args = self.commands.gateway_start_args(normalized, valid_port)
        self.events.log(f"Running: {format_command_for_log(self.bridge, args)}")
        stream_token = token.child()
        self._command_token = stream_token
        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        def _on_stdout(line: str) -> None:
            stdout_lines.append(line)
            self.handle_gateway_line(line, is_error=False)

        def _on_stderr(line: str) -> None:
            stderr_lines.append(line)
            self.handle_gateway_line(line, is_error=True)

        try:
            task = await self.runner.spawn_captured(self.bridge, args, _on_stdout, _on_stderr, stream_token)
        except SpawnFailure as exc:
            self._forget_stream()
            return self._start_result(StartOutcome.SPAWN_FAILURE, f"Gateway start failed: {exc}", valid_port)
        self._command_task = task
        task.add_done_callback(self._on_command_done)

        try:
            await stream_token.sleep(self.timings.start_grace_ms / 1000.0)
            if task.done():
                failure = await self._inspect_finished(task.result(), valid_port)
                if failure is not None:
                    return failure
            else:
                for _ in range(self.timings.start_poll_attempts):
                    if is_port_in_use_text("".join(stderr_lines), "".join(stdout_lines)):
                        return await self._fail_start(StartOutcome.PORT_IN_USE, _port_in_use_message(valid_port), valid_port)
                    if task.done():
                        failure = await self._inspect_finished(task.result(), valid_port)
                        if failure is not None:
                            return failure
                        break
                    await stream_token.sleep(self.timings.start_poll_interval_ms / 1000.0)
        except OperationCancelled:
            return await self._fail_start(StartOutcome.CANCELED, "Gateway start canceled.", valid_port)

        self.gateway_running = True
        self.gateway_port = valid_port
        self.distro = normalized
        self._register_monitor(valid_port)
        self._persist(distro=normalized, gateway_port=valid_port, monitor_port=valid_port)

        outcome = StartOutcome.RUNNING
        if verify_reachable:
            self.events.set_status(f"Waiting for gateway on port {valid_port}.")
            reachable = await wait_until_healthy(
                self._probe,
                valid_port,
                stream_token,
                attempts=self.timings.reachability_attempts,
                interval_seconds=self.timings.reachability_interval_seconds,
            )
            if token.is_cancelled:
                return await self._fail_start(StartOutcome.CANCELED, "Gateway start canceled.", valid_port)
            if not reachable:
                self.store.mutate(
                    lambda state: replace(state, is_healthy=False, health_status_message="did not become reachable")
                )
                return await self._fail_start(
                    StartOutcome.UNREACHABLE,
                    f"Gateway did not become reachable at port {valid_port}.",
                    valid_port,
                )
            if task.done():
                final = task.result()
                if final.canceled or final.exit_code != 0:
                    self.events.log(f"Gateway command ended unexpectedly after startup (exit {final.exit_code}).")
                    if is_port_in_use_text(final.stderr, final.stdout):
                        return await self._fail_start(
                            StartOutcome.PORT_IN_USE, _port_in_use_message(valid_port), valid_port
                        )
                    return await self._fail_start(StartOutcome.FAILED, "Gateway start failed.", valid_port)
            outcome = StartOutcome.HEALTHY

        # The gateway outlives the operation that started it.
        stream_token.detach()
        self.health_loop.start()
        return self._start_result(outcome, f"Gateway running on port {valid_port}.", valid_port)

    async def _inspect_finished(self, result: CommandResult, port: int) -> StartResult | None:
        """Classify a start command that already exited; None means not a failure."""
        if result.canceled:
            return await self._fail_start(StartOutcome.CANCELED, "Gateway start canceled.", port)
        if is_port_in_use_text(result.stderr, result.stdout):
            return await self._fail_start(StartOutcome.PORT_IN_USE, _port_in_use_message(port), port)
        if result.exit_code == 0:
            return None
        self.events.log(f"Gateway start exited with code {result.exit_code}.")
        if result.stderr.strip():
            self.events.log(f"Gateway start stderr: {normalize_log_text(result.stderr)}")
        return await self._fail_start(StartOutcome.FAILED, "Gateway failed to start. See logs for details.", port)

    async def _fail_start(self, outcome: StartOutcome, message: str, port: int | None) -> StartResult:
        self.gateway_running = False
        await self._stop_stream()
        return self._start_result(outcome, message, port)

    def _start_result(self, outcome: StartOutcome, message: str, port: int | None = None) -> StartResult:
        self.events.log(message, level=logging.INFO if outcome.ok else logging.WARNING)
        self.events.set_status(message)
        return StartResult(outcome, message, port)

    def _register_monitor(self, port: int) -> None:
        state = MonitorState.new(port)
        if self.gateway_token:
            state = state.with_token(self.gateway_token)
        self.store.set(state)

    def _on_command_done(self, task: asyncio.Task[CommandResult]) -> None:
        if task is not self._command_task or not self.gateway_running:
            return
        if task.cancelled() or task.exception() is not None:
            return
        result = task.result()
        if result.canceled:
            return
        self.gateway_running = False
        self.events.log(f"Gateway process exited with code {result.exit_code}.")
        self.events.set_status("Gateway is not running.")

    def _forget_stream(self) -> None:
        token = self._command_token
        self._command_task = None
        self._command_token = None
        if token is not None:
            token.cancel()
            token.detach()

    async def _stop_stream(self) -> None:
        """Cancel the streaming start command and wait for it to terminate."""
        task = self._command_task
        self._forget_stream()
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    async def stop(self, distro: str | None = None, cancel: CancellationToken | None = None) -> bool:
        """Stop every gateway process; state is reset whatever the stop script returns."""
        normalized = normalize_distro_name(distro or self.distro)
        if not normalized:
            self.events.log("Cannot stop gateway: distro is not set.")
            return False

        await self._stop_stream()
        await self.health_loop.stop_and_wait()
        args = self.commands.gateway_stop_args(normalized)
        self.events.log(f"Running: {format_command_for_log(self.bridge, args)}")
        try:
            result = await self.runner.run(self.bridge, args, cancel)
        except SpawnFailure as exc:
            self.events.log(f"Gateway stop failed: {exc}")
            self.events.set_status("Gateway stop failed.")
            return False
        if result.canceled:
            self.events.set_status("Gateway stop canceled.")
            return False
        if result.exit_code != 0:
            self.events.log(f"Gateway stop command exited with code {result.exit_code}.")
            if result.stderr.strip():
                self.events.log(f"Gateway stop stderr: {normalize_log_text(result.stderr)}")

        self.gateway_running = False
        self.gateway_token = None
        self.gateway_port = self.default_port
        self._persist(gateway_token=None)
        self.store.mutate(lambda state: replace(state, is_monitoring=False, monitor_token=None))
        message = f"All {self.commands.service} processes stopped."
        self.events.log(message)
        self.events.set_status(message)
        return True

    # ------------------------------------------------------------------
    # Token handling

    def handle_gateway_line(self, line: str, *, is_error: bool = False) -> None:
        """Log one streamed gateway line and scan it for token events."""
        self.events.log(f"[gateway][stderr] {line}" if is_error else f"[gateway] {line}")
        if not line or not line.strip():
            return

        missing = detect_token_missing(line)
        if missing is not None:
            self.gateway_token = None
            self.store.mutate(lambda state: state.with_token_missing(missing))
            self._persist(gateway_token=None)
            self.events.log(f"[gateway] {missing}")
            self.events.set_status("Gateway token required.")

        token = extract_token(line)
        if token is None:
            return
        self._apply_token(token)
        self.events.log("[gateway] Dashboard token detected. Copy this to Control UI settings.")

    def _apply_token(self, token: str) -> None:
        self.gateway_token = token
        self.store.mutate(lambda state: state.with_token(token))
        self._persist(gateway_token=token)

    def _on_clipboard_token(self, token: str) -> None:
        self.gateway_token = token
        self._persist(gateway_token=token)

    def paste_token(self, text: str | None) -> str | None:
        """Accept a token pasted by the user (structured or bare)."""
        token = extract_token_or_candidate(text)
        if token is None:
            self.events.log("No gateway token found in pasted text.")
            self.events.set_status("Invalid gateway token.")
            return None
        self._apply_token(token)
        self.events.log("Gateway token loaded.")
        self.events.set_status("Gateway token loaded.")
        return token

    async def refresh_token_from_config(
        self,
        distro: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> OperationResult:
        """Read `gateway.auth.token` from the service configuration."""
        normalized = normalize_distro_name(distro or self.distro)
        if not normalized:
            return OperationResult(False, "Distro required.")
        try:
            result = await self.runner.run(self.bridge, self.commands.token_config_args(normalized), cancel)
        except SpawnFailure as exc:
            self.events.log(f"Token lookup failed: {exc}")
            return OperationResult(False, "Token lookup failed.")
        if result.canceled:
            return OperationResult(False, "Token lookup canceled.", canceled=True)
        if result.exit_code != 0:
            self.events.log(f"Token config read exited with code {result.exit_code}.")
            return OperationResult(False, "Token lookup failed.")
        token = extract_token_or_candidate(result.stdout)
        if token is None:
            self.events.log("Gateway token is not set in configuration.")
            return OperationResult(False, "Gateway token not set.")
        self._apply_token(token)
        self.events.log("Gateway token loaded from configuration.")
        return OperationResult(True, "Gateway token loaded.", data={"token": token})

    def start_token_watch(self) -> bool:
        return self.token_watch.start(last_seen=self.gateway_token)

    def stop_token_watch(self) -> None:
        self.token_watch.stop()

    # ------------------------------------------------------------------
    # Monitor target

    def add_monitor(self, port: Any) -> bool:
        """Replace the monitor target, check it once and make sure the loop runs."""
        valid_port = parse_port(port)
        if valid_port is None:
            self.events.log("Invalid monitor port. Enter 1~65535.")
            self.events.set_status("Invalid monitor port.")
            return False

        self._register_monitor(valid_port)
        self._persist(monitor_port=valid_port)
        self.events.log(f"Gateway monitor port set to {valid_port}.")
        self.events.set_status(f"Monitor port set to {valid_port}.")
        if self.health_loop.is_running:
            self._spawn_background(self.health_loop.check_now())
            return True
        return self.health_loop.start()

    def pause_monitoring(self) -> bool:
        if self.store.mutate(lambda state: state.with_monitoring(False)) is None:
            self.events.log("No monitor port configured.")
            return False
        self.health_loop.stop()
        self.events.log("Gateway health monitoring stopped.")
        self.events.set_status("Gateway health monitoring stopped.")
        return True

    def resume_monitoring(self) -> bool:
        if self.store.mutate(lambda state: state.with_monitoring(True)) is None:
            self.events.log("No monitor port configured.")
            self.events.set_status("Set a monitor port first.")
            return False
        started = self.health_loop.start()
        if started:
            self.events.log("Gateway health monitoring started.")
        return started

    def toggle_monitoring(self) -> bool:
        """Flip monitoring; returns whether monitoring is now active."""
        if self.health_loop.is_running:
            self.pause_monitoring()
            return False
        return self.resume_monitoring()

    def _spawn_background(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Views and shutdown

    def snapshot(self) -> dict[str, Any]:
        """Plain-data view for the presentation layer."""
        monitor = self.store.get()
        status = self.events.status
        return {
            "status": status,
            "status_tone": status_tone(status),
            "status_icon": status_icon(status),
            "busy": self.busy,
            "distro": self.distro,
            "gateway": {
                "running": self.gateway_running,
                "port": self.gateway_port,
                "token": self.gateway_token,
            },
            "monitor": None
            if monitor is None
            else {
                "port": monitor.port,
                "is_monitoring": monitor.is_monitoring,
                "is_healthy": monitor.is_healthy,
                "last_checked": monitor.last_checked.isoformat() if monitor.last_checked else None,
                "token_detected": bool(monitor.monitor_token),
                "token_required": monitor.token_required,
                "token_status_message": monitor.token_status_message,
                "health_status_message": monitor.health_status_message,
            },
            "monitor_status": build_monitor_status(monitor),
            "monitor_summary": build_monitor_summary(monitor),
            "monitor_tone": monitor_tone(monitor),
            "monitor_icon": monitor_icon(monitor),
            "health_loop_running": self.health_loop.is_running,
            "token_watch_running": self.token_watch.is_running,
        }

    async def close(self) -> None:
        """Stop loops and streams and release HTTP resources."""
        if self._operation_token is not None:
            self._operation_token.cancel()
        self.token_watch.stop()
        await self.health_loop.stop_and_wait()
        await self._stop_stream()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._owns_prober:
            await self.prober.close()
