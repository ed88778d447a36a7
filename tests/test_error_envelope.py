"""Tests for the error envelope format and status-to-code mapping.

Error responses look like:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from signalnoise.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    service_error_response,
)
from signalnoise.api.schemas import Envelope, ErrorBody
from signalnoise.logging import set_correlation_id
from signalnoise.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    SessionExpiredError,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="authentication required")
        assert error.details is None

    def test_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_session_expired_code_is_valid(self):
        assert ErrorBody(code="session_expired", message="expired").code == "session_expired"


class TestEnvelope:
    def test_request_id_follows_correlation_id(self):
        set_correlation_id("corr-1")
        envelope = Envelope(status="error", error=ErrorBody(code="not_found", message="x"))
        assert envelope.request_id == "corr-1"

    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


def test_status_mapping_covers_contract_codes():
    assert _STATUS_TO_CODE[401] == "unauthorized"
    assert _STATUS_TO_CODE[403] == "forbidden"
    assert _STATUS_TO_CODE[404] == "not_found"
    assert _STATUS_TO_CODE[405] == "method_not_allowed"
    assert _STATUS_TO_CODE[409] == "conflict"
    assert _error_code_for_status(418) == "server_error"


def test_error_response_body():
    response = _error_response(404, "missing", {"id": "x"})
    body = json.loads(response.body)
    assert response.status_code == 404
    assert body["status"] == "error"
    assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}
    assert "request_id" in body
    assert "data" not in body


@pytest.mark.parametrize(
    "exc,status,code",
    [
        (NotFoundError("gone"), 404, "not_found"),
        (ForbiddenError("no"), 403, "forbidden"),
        (ConflictError("busy", detail={"lastActive": "2024-01-01T00:00:00.000Z"}), 409, "conflict"),
        (SessionExpiredError("expired"), 401, "session_expired"),
        (ServerError("internal server error"), 500, "server_error"),
    ],
)
def test_service_errors_stay_distinct(exc, status, code):
    response = service_error_response(exc, valid=False)
    body = json.loads(response.body)
    assert response.status_code == status
    assert body["error"]["code"] == code
    assert body["valid"] is False
