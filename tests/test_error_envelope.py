"""Error envelope format shared by every failure response.

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from portalauth.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, error_response
from portalauth.api.schemas import Envelope, ErrorBody
from portalauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    HashingUnavailableError,
    InvalidRoleError,
    MalformedTokenError,
)


class TestErrorBody:
    def test_known_codes_accepted(self):
        for code in ("unauthorized", "forbidden", "invalid_role", "missing_role", "store_unavailable"):
            assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="x")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        first, second = Envelope(status="ok"), Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id


def test_status_code_mapping():
    assert _STATUS_TO_CODE[401] == "unauthorized"
    assert _error_code_for_status(403) == "forbidden"
    assert _error_code_for_status(418) == "server_error"


def test_error_response_shape():
    response = error_response(403, "access denied")
    body = json.loads(response.body)

    assert response.status_code == 403
    assert body["status"] == "error"
    assert body["error"] == {"code": "forbidden", "message": "access denied", "details": None}
    assert body["request_id"]


@pytest.mark.parametrize(
    "exc,status,code",
    [
        (AuthenticationError("x"), 401, "unauthorized"),
        (ForbiddenError("x"), 403, "forbidden"),
        (InvalidRoleError("x"), 400, "invalid_role"),
        (MalformedTokenError("x"), 400, "validation_error"),
        (HashingUnavailableError("x"), 503, "hashing_unavailable"),
    ],
)
def test_service_errors_carry_status_and_code(exc, status, code):
    assert exc.status_code == status
    assert exc.error_code == code
