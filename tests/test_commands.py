from gatewaywarden.commands import (
    BridgeCommandBuilder,
    format_command_for_log,
    is_valid_port,
    normalize_bridge_args,
    normalize_distro_name,
    parse_distro_lines,
    parse_port,
    verify_version,
)
from gatewaywarden.process import CommandResult


def test_is_valid_port_bounds() -> None:
    assert is_valid_port(1) is True
    assert is_valid_port(65535) is True
    assert is_valid_port(18789) is True
    assert is_valid_port(0) is False
    assert is_valid_port(-5) is False
    assert is_valid_port(65536) is False


def test_parse_port_rejects_non_numeric_input() -> None:
    assert parse_port(" 8080 ") == 8080
    assert parse_port("80a") is None
    assert parse_port("") is None
    assert parse_port(None) is None
    assert parse_port(True) is None
    assert parse_port(80.0) is None


def test_normalize_distro_name_joins_spelled_out_letters() -> None:
    assert normalize_distro_name("U b u n t u") == "Ubuntu"
    assert normalize_distro_name("\0U\0b\0u\0n\0t\0u\0") == "Ubuntu"


def test_normalize_distro_name_keeps_regular_names() -> None:
    assert normalize_distro_name("  Ubuntu-22.04 ") == "Ubuntu-22.04"
    assert normalize_distro_name("Oracle Linux 9") == "Oracle Linux 9"
    assert normalize_distro_name(None) == ""


def test_normalize_bridge_args_only_touches_distro_flag_value() -> None:
    args = ["-d", "U b u n t u", "--", "bash", "-lc", "echo a b"]
    assert normalize_bridge_args(args) == ["-d", "Ubuntu", "--", "bash", "-lc", "echo a b"]


def test_parse_distro_lines_dedups_case_insensitively() -> None:
    output = "\ufeffUbuntu\r\n\0D\0e\0b\0i\0a\0n\0\r\nubuntu\r\n\r\n"
    assert parse_distro_lines(output) == ["Ubuntu", "Debian"]
    assert parse_distro_lines("   ") == []


def test_format_command_for_log_quotes_arguments_with_spaces() -> None:
    rendered = format_command_for_log("wsl.exe", ["-d", "Ubuntu", "--", "bash", "-lc", "echo hi"])
    assert rendered == 'wsl.exe -d Ubuntu -- bash -lc "echo hi"'


def test_verify_version_uses_last_non_empty_line() -> None:
    result = CommandResult(0, "/usr/local/bin/openclaw\nopenclaw 2026.1.5\n\n", "")
    assert verify_version(result) == (True, "openclaw 2026.1.5", "")


def test_verify_version_failures() -> None:
    ok, _version, message = verify_version(CommandResult(127, "", "not found"))
    assert ok is False
    assert "exit 127" in message
    ok, _version, message = verify_version(CommandResult(0, "\n", ""))
    assert ok is False
    assert "no output" in message


def test_builder_start_args_wrap_stdbuf_and_port() -> None:
    builder = BridgeCommandBuilder(service="openclaw")
    args = builder.gateway_start_args("Ubuntu", 18789)
    assert args[:5] == ["-d", "Ubuntu", "--", "bash", "-lc"]
    assert "-u" not in args
    assert "stdbuf -oL -eL openclaw gateway --allow-unconfigured --port 18789" in args[-1]


def test_builder_install_and_verify_run_as_root() -> None:
    builder = BridgeCommandBuilder(service="openclaw", installer_url="https://example.invalid/install.sh")
    install = builder.install_args("Ubuntu")
    verify = builder.verify_args("Ubuntu")
    assert install[2:4] == ["-u", "root"]
    assert "https://example.invalid/install.sh" in install[-1]
    assert verify[2:4] == ["-u", "root"]
    assert verify[-1] == "command -v openclaw && openclaw --version"


def test_builder_stop_args_are_best_effort() -> None:
    script = BridgeCommandBuilder(service="openclaw").gateway_stop_args("Ubuntu")[-1]
    assert "openclaw gateway stop" in script
    assert "systemctl --user stop openclaw-gateway.service" in script
    assert script.index("pkill -TERM") < script.index("sleep 1") < script.index("pkill -KILL")
    assert "rm -f /tmp/openclaw-gateway.pid" in script
    assert script.endswith("exit 0")


def test_builder_token_config_and_list_args() -> None:
    builder = BridgeCommandBuilder(service="openclaw")
    assert builder.list_distros_args() == ["-l", "-q"]
    assert builder.token_config_args("Ubuntu")[-1] == "openclaw config get gateway.auth.token"
