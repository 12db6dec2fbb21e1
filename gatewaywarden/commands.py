"""Bridge command construction and input normalization helpers.

This module builds the argv lists handed to the bridge executable (`wsl.exe`)
so lifecycle code can stay focused on orchestration.
"""

from __future__ import annotations

import shlex
import unicodedata
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .process import CommandResult

DISTRO_FLAG = "-d"
DEFAULT_SERVICE_COMMAND = "openclaw"
DEFAULT_INSTALLER_URL = "https://openclaw.ai/install.sh"
DEFAULT_GATEWAY_PORT = 18789
MIN_PORT = 1
MAX_PORT = 65535


def is_valid_port(value: Any) -> bool:
    """Return true for integers (or numeric strings) in 1..65535."""
    return parse_port(value) is not None


def parse_port(value: Any) -> int | None:
    """Parse a TCP port from user input, or None when invalid."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        port = value
    elif isinstance(value, str):
        text = value.strip()
        if not text or not text.lstrip("+-").isdigit():
            return None
        try:
            port = int(text)
        except ValueError:
            return None
    else:
        return None
    if port < MIN_PORT or port > MAX_PORT:
        return None
    return port


def _cleanup_name(value: str) -> str:
    """Drop control/format characters and map odd whitespace to plain spaces."""
    normalized = unicodedata.normalize("NFC", value.replace("\0", "")).strip()
    if not normalized:
        return ""
    chars: list[str] = []
    for current in normalized:
        if current == " ":
            chars.append(" ")
            continue
        if unicodedata.category(current) in {"Cc", "Cf"}:
            continue
        if current.isspace() and current != " ":
            chars.append(" ")
            continue
        chars.append(current)
    return " ".join("".join(chars).split())


def normalize_distro_name(value: str | None) -> str:
    """Normalize a distro identifier typed by a user or echoed by `wsl -l`.

    Names that arrive spelled out one letter at a time (a side effect of
    UTF-16 output decoded as UTF-8) are joined back together.
    """
    cleaned = _cleanup_name(value or "")
    if not cleaned:
        return ""
    tokens = cleaned.split(" ")
    singles = sum(1 for token in tokens if len(token) == 1)
    if singles == len(tokens):
        return "".join(tokens)
    if len(tokens) >= 3 and singles >= len(tokens) - 1:
        return "".join(tokens)
    return cleaned


def normalize_bridge_args(args: list[str]) -> list[str]:
    """Normalize the token following each distro flag, leave the rest untouched."""
    out: list[str] = []
    for index, arg in enumerate(args):
        if index > 0 and args[index - 1] == DISTRO_FLAG:
            out.append(normalize_distro_name(arg))
        else:
            out.append(arg)
    return out


def parse_distro_lines(output: str) -> list[str]:
    """Return unique distro names from `wsl -l -q` output (case-insensitive)."""
    if not output or not output.strip():
        return []
    text = unicodedata.normalize("NFC", output.replace("\0", "").replace("\ufeff", " "))
    seen: set[str] = set()
    names: list[str] = []
    for line in text.splitlines():
        name = normalize_distro_name(line)
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        names.append(name)
    return names


def format_command_for_log(command: str, args: list[str]) -> str:
    """Render a bridge invocation as one readable log line."""
    parts = [command]
    for arg in normalize_bridge_args(list(args)):
        if " " in arg:
            parts.append('"' + arg.replace('"', '\\"') + '"')
        else:
            parts.append(arg)
    return " ".join(parts)


def verify_version(result: CommandResult, service: str = DEFAULT_SERVICE_COMMAND) -> tuple[bool, str, str]:
    """Inspect the verify command result and return (ok, version, message)."""
    if result.exit_code != 0:
        return False, "", f"{service} --version command failed (exit {result.exit_code})."
    lines = parse_distro_lines(result.stdout)
    if not lines:
        return False, "", f"{service} --version returned no output."
    return True, lines[-1], ""


class BridgeCommandBuilder:
    """Build bridge argv lists for the supervised service."""

    def __init__(
        self,
        *,
        service: str = DEFAULT_SERVICE_COMMAND,
        installer_url: str = DEFAULT_INSTALLER_URL,
    ) -> None:
        self.service = service
        self.installer_url = installer_url

    def _wrap(self, distro: str, script: str, *, as_root: bool = False) -> list[str]:
        args = [DISTRO_FLAG, normalize_distro_name(distro)]
        if as_root:
            args.extend(["-u", "root"])
        args.extend(["--", "bash", "-lc", script])
        return args

    def list_distros_args(self) -> list[str]:
        return ["-l", "-q"]

    def install_args(self, distro: str) -> list[str]:
        """Download and run the installer non-interactively as root."""
        url = shlex.quote(self.installer_url)
        script = (
            f"curl -fsSL {url} -o /tmp/{self.service}-install.sh; "
            f"chmod +x /tmp/{self.service}-install.sh; "
            f"bash /tmp/{self.service}-install.sh --no-onboard --no-prompt --no-gum"
        )
        return self._wrap(distro, script, as_root=True)

    def verify_args(self, distro: str) -> list[str]:
        svc = shlex.quote(self.service)
        return self._wrap(distro, f"command -v {svc} && {svc} --version", as_root=True)

    def gateway_start_args(self, distro: str, port: int) -> list[str]:
        """Start the gateway in the foreground, line-buffered when `stdbuf` exists."""
        svc = shlex.quote(self.service)
        run = f"{svc} gateway --allow-unconfigured --port {int(port)}"
        script = (
            f"command -v {svc} >/dev/null || exit 1; "
            f"(command -v stdbuf >/dev/null 2>&1 && stdbuf -oL -eL {run} || {run})"
        )
        return self._wrap(distro, script)

    def gateway_stop_args(self, distro: str) -> list[str]:
        """Stop every gateway process; tolerant of nothing running."""
        svc = shlex.quote(self.service)
        patterns = [f"{self.service}-gateway", f"{self.service} gateway", self.service]
        term = " ".join(f"pkill -TERM -f {shlex.quote(p)} 2>/dev/null || true;" for p in patterns)
        kill = " ".join(f"pkill -KILL -f {shlex.quote(p)} 2>/dev/null || true;" for p in patterns)
        script = (
            f"{svc} gateway stop >/dev/null 2>&1 || true; "
            "if command -v systemctl >/dev/null 2>&1; then "
            f"systemctl --user stop {shlex.quote(self.service + '-gateway.service')} >/dev/null 2>&1 || true; fi; "
            f"{term} sleep 1; {kill} "
            f"rm -f /tmp/{self.service}-gateway.pid; exit 0"
        )
        return self._wrap(distro, script)

    def token_config_args(self, distro: str) -> list[str]:
        svc = shlex.quote(self.service)
        return self._wrap(distro, f"{svc} config get gateway.auth.token")
