import json
import logging

from melody_app.errors import (
    ConflictError,
    GameError,
    NotFoundError,
    ValidationError,
    from_payload,
    session_expired,
)
from melody_app.logging_utils import ColorFormatter, JsonFormatter, request_id_ctx


def test_error_payloads_round_trip_through_codes():
    err = ValidationError("Bad answer", {"answer": "Unknown note"})
    assert err.to_payload() == {"error": "invalid_request", "message": "Bad answer", "details": {"answer": "Unknown note"}}
    assert NotFoundError().to_payload() == {"error": "not_found", "message": NotFoundError.default_message}

    back = from_payload(err.to_payload())
    assert isinstance(back, ValidationError)
    assert back.details == {"answer": "Unknown note"}
    assert isinstance(from_payload({"error": "conflict", "message": "done"}), ConflictError)
    unknown = from_payload({"error": "internal_error", "message": "boom"})
    assert type(unknown) is GameError
    assert str(unknown) == "boom"


def test_session_expired_is_tagged():
    err = session_expired()
    assert isinstance(err, ValidationError)
    assert "session" in err.details


def _record(**extra):
    rec = logging.LogRecord("melody.test", logging.INFO, __file__, 1, "answer_submitted", None, None)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


def test_json_formatter_includes_game_fields_and_request_id():
    token = request_id_ctx.set("rid-1")
    try:
        line = JsonFormatter().format(_record(profile_id="p1", score=7, unrelated="x"))
    finally:
        request_id_ctx.reset(token)
    payload = json.loads(line)
    assert payload["message"] == "answer_submitted"
    assert payload["request_id"] == "rid-1"
    assert payload["profile_id"] == "p1"
    assert payload["score"] == 7
    assert "unrelated" not in payload


def test_color_formatter_without_color():
    line = ColorFormatter(use_color=False).format(_record(method="POST", path="/api/x", status=201, session_id="s1"))
    assert "\033[" not in line
    assert "POST /api/x 201" in line
    assert "[session_id=s1]" in line
