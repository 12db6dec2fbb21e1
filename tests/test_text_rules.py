from gatewaywarden.errors import StartOutcome
from gatewaywarden.text_rules import (
    TOKEN_MISSING_MESSAGE,
    classify_start_output,
    detect_token_missing,
    extract_plain_candidate,
    extract_token,
    extract_token_or_candidate,
    is_port_in_use_text,
    is_token,
)


def test_extract_token_from_query_fragment() -> None:
    assert extract_token("open this: token=ABCDEFGHIJKLMNOP1234 then paste") == "ABCDEFGHIJKLMNOP1234"


def test_extract_token_from_dashboard_url() -> None:
    line = "Dashboard ready at http://127.0.0.1:18789/?token=abcDEF123456xyz&lang=en"
    assert extract_token(line) == "abcDEF123456xyz"


def test_extract_token_from_url_fragment_access_token() -> None:
    line = "Control UI: http://localhost:18789/#access_token=Zz9-Yy8_Xx7.Ww6"
    assert extract_token(line) == "Zz9-Yy8_Xx7.Ww6"


def test_extract_token_from_json_field() -> None:
    assert extract_token('{"gateway": {"token": "json-token-123456"}}') == "json-token-123456"


def test_extract_token_skips_null_json_field() -> None:
    assert extract_token('{"token": "null"}') is None
    assert extract_token('{"token": ""}') is None


def test_extract_token_from_labeled_line() -> None:
    assert extract_token("Gateway token: QWERTYUIOP123456") == "QWERTYUIOP123456"
    assert extract_token("control ui token = Abcdefghijkl9") == "Abcdefghijkl9"


def test_extract_token_rejects_short_values() -> None:
    assert extract_token("token=short") is None
    assert extract_token("") is None
    assert extract_token(None) is None


def test_plain_candidate_strips_surrounding_punctuation() -> None:
    assert extract_plain_candidate('Paste "abcDEF123456xyz", please') == "abcDEF123456xyz"
    assert extract_plain_candidate("no candidates here") is None


def test_extract_token_or_candidate_prefers_structured_rules() -> None:
    text = "fallback-candidate-1 http://h:1/?token=structured-12345"
    assert extract_token_or_candidate(text) == "structured-12345"


def test_extract_token_or_candidate_falls_back_to_bare_word() -> None:
    assert extract_token_or_candidate("Your token: abcDEF123456_.-") == "abcDEF123456_.-"


def test_is_token_shape() -> None:
    assert is_token("ABCDEFGHIJKL") is True
    assert is_token("ABCDEFGHIJK") is False
    assert is_token("has space in it") is False
    assert is_token(None) is False


def test_detect_token_missing_matches_close_1008() -> None:
    assert detect_token_missing("disconnected (1008): unauthorized: gateway token missing") == TOKEN_MISSING_MESSAGE


def test_detect_token_missing_matches_reason_and_code() -> None:
    assert detect_token_missing("ws closed reason=token_missing") == TOKEN_MISSING_MESSAGE
    assert detect_token_missing("ws closed code=4008") == TOKEN_MISSING_MESSAGE


def test_detect_token_missing_ignores_normal_lines() -> None:
    assert detect_token_missing("gateway started") is None
    assert detect_token_missing("") is None
    assert detect_token_missing("code=40080") is None


def test_classify_start_output_port_in_use_variants() -> None:
    assert classify_start_output("Error: listen EADDRINUSE 127.0.0.1:18789") is StartOutcome.PORT_IN_USE
    assert classify_start_output(None, "gateway already running (pid 12)") is StartOutcome.PORT_IN_USE
    assert is_port_in_use_text("lock timeout") is True
    assert is_port_in_use_text("Address already in use") is True


def test_classify_start_output_unmatched() -> None:
    assert classify_start_output("listening on 18789") is None
    assert is_port_in_use_text(None, "") is False
