import structlog

from authcore.logging import (
    _add_correlation_id,
    _redact_secrets,
    configure_logging,
    correlation_id_var,
    fingerprint,
    set_correlation_id,
)


def test_redacts_secret_values():
    event = _redact_secrets(
        None,
        "info",
        {
            "event": "token_issued",
            "refresh_token": "r_abcdefghijklmnop",
            "code_verifier": "verifier-value-123",
            "password": "hunter2hunter2",
            "code": "c_supersecret",
            "state": "s_supersecret",
        },
    )
    assert event["event"] == "token_issued"
    for key in ("refresh_token", "code_verifier", "password", "code", "state"):
        assert event[key].endswith("***")
        assert len(event[key]) == 5


def test_passthrough_keys_untouched():
    event = _redact_secrets(
        None,
        "info",
        {
            "event": "refresh_token_rotated",
            "token_type": "Bearer",
            "error_code": "invalid_grant",
            "code_fp": "1a2b3c4d",
            "family_id": "fam-1",
        },
    )
    assert event["token_type"] == "Bearer"
    assert event["error_code"] == "invalid_grant"
    assert event["code_fp"] == "1a2b3c4d"
    assert event["family_id"] == "fam-1"


def test_fingerprint_is_short_and_stable():
    assert fingerprint("abc") == fingerprint("abc")
    assert len(fingerprint("abc")) == 8
    assert fingerprint("abc") != fingerprint("abd")
    assert fingerprint(None) is None


def test_correlation_id_added():
    token = correlation_id_var.set(None)
    try:
        cid = set_correlation_id()
        event = _add_correlation_id(None, "info", {"event": "x"})
    finally:
        correlation_id_var.reset(token)
    assert event["correlation_id"] == cid


def test_configure_logging_keeps_redaction_in_console_mode():
    try:
        configure_logging("debug", json_output=False, development_mode=False)
        processors = structlog.get_config()["processors"]
        assert _redact_secrets in processors
        assert processors.index(_redact_secrets) < len(processors) - 1
    finally:
        configure_logging()
