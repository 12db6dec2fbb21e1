import asyncio

from fastapi.testclient import TestClient

from gatewaywarden.app import _service_bind_addr, create_app
from gatewaywarden.cancellation import CancellationToken
from gatewaywarden.config import ControllerConfig
from gatewaywarden.controller import GatewayController
from gatewaywarden.process import CommandResult


class _QuietRunner:
    async def spawn_captured(self, command, args, on_stdout_line=None, on_stderr_line=None, cancel=None):
        async def _serve() -> CommandResult:
            await (cancel or CancellationToken()).wait()
            return CommandResult(-1, "", "", canceled=True)

        return asyncio.create_task(_serve())

    async def run(self, command, args, cancel=None) -> CommandResult:
        return CommandResult(0, "Ubuntu\n", "")


async def _always_healthy(port: int, cancel: CancellationToken) -> bool:
    return True


def _client() -> tuple[TestClient, GatewayController]:
    cfg = ControllerConfig.model_validate(
        {
            "distro": "Ubuntu",
            "timings": {"start_grace_ms": 1, "start_poll_attempts": 1, "start_poll_interval_ms": 1},
        }
    )
    ctl = GatewayController(cfg, runner=_QuietRunner(), probe=_always_healthy)  # type: ignore[arg-type]
    return TestClient(create_app(controller=ctl, watch_settings=False)), ctl


def test_service_bind_addr() -> None:
    assert _service_bind_addr("http://127.0.0.1:18790") == ("127.0.0.1", 18790)


def test_status_and_logs() -> None:
    client, _ctl = _client()
    with client:
        status = client.get("/status").json()
        assert status["distro"] == "Ubuntu"
        assert status["monitor"] is None
        assert status["monitor_status"] == "Monitor target not set."
        assert client.get("/logs").json() == {"lines": []}
        assert client.get("/healthz").json()["service"] == "gatewaywarden"


def test_invalid_input_is_400() -> None:
    client, _ctl = _client()
    with client:
        assert client.post("/monitor", json={"port": "abc"}).status_code == 400
        assert client.post("/gateway/start", json={"port": 0}).status_code == 400
        assert client.post("/token", json={"text": "short"}).status_code == 400
        assert client.post("/monitor/toggle").status_code == 400


def test_busy_controller_is_409() -> None:
    client, ctl = _client()
    with client:
        ctl.busy = True
        assert client.post("/gateway/stop", json={}).status_code == 409
        assert client.get("/distros").status_code == 409
        ctl.busy = False


def test_start_token_and_stop_flow() -> None:
    client, ctl = _client()
    with client:
        started = client.post("/gateway/start", json={"port": 18789}).json()
        assert started["ok"] is True
        assert started["outcome"] == "running"

        token = client.post("/token", json={"text": "token=ABCDEFGHIJKLMNOP1234"}).json()
        assert token["token"] == "ABCDEFGHIJKLMNOP1234"
        assert client.get("/status").json()["monitor"]["token_detected"] is True

        stopped = client.post("/gateway/stop", json={}).json()
        assert stopped["ok"] is True
        assert ctl.gateway_running is False


def test_distros_endpoint_selects_first() -> None:
    client, _ctl = _client()
    with client:
        body = client.get("/distros").json()
        assert body["ok"] is True
        assert body["selected"] == "Ubuntu"
