from expensegate.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_redacts_tokens_and_codes():
    event = {
        "event": "login",
        "access_code": "sunrise-42",
        "authorization": "Bearer abc.def.ghi",
        "client_ip": "10.0.0.1",
        "error_code": "unauthorized",
        "status_code": 401,
    }

    redacted = _redact_pii(None, "info", dict(event))

    assert redacted["access_code"] == "su***42"
    assert redacted["authorization"].startswith("Be***")
    assert redacted["client_ip"] == "10.0.0.1"
    assert redacted["error_code"] == "unauthorized"
    assert redacted["status_code"] == 401


def test_correlation_id_added_to_events():
    set_correlation_id("req-77")
    try:
        assert get_correlation_id() == "req-77"
        assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-77"
    finally:
        set_correlation_id(None)


def test_sanitize_error_message_strips_credentials_and_paths():
    message = "token=abc123 failed reading /srv/expensegate/state/gate_store.json"

    cleaned = sanitize_error_message(message)

    assert "abc123" not in cleaned
    assert "/srv/expensegate" not in cleaned
    assert sanitize_error_message("") == "An error occurred"
