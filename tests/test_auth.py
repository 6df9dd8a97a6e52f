from __future__ import annotations

import pytest
from fastapi import HTTPException
from jose import jwt

from apps.api.core.config import Settings
from apps.api.dependencies.auth import decode_session_token
from apps.api.dependencies.errors import FORCE_SIGN_OUT_HEADER, http_error
from apps.api.helpdesk import (
    AccountDeactivated,
    AuditWriteError,
    AuthorizationError,
    InvalidStatus,
    MutationFailedError,
    TicketNotFoundError,
)

SETTINGS = Settings(session_secret="s3cret")


def _encode(claims: dict, secret: str = "s3cret") -> str:
    return jwt.encode(claims, secret, algorithm="HS256")


def test_claims_are_extracted():
    token = _encode(
        {"sub": "U1", "email": "ana@example.com", "aud": "authenticated", "user_metadata": {"full_name": "Ana"}}
    )

    claims = decode_session_token(token, SETTINGS)

    assert (claims.user_id, claims.email, claims.display_name) == ("U1", "ana@example.com", "Ana")


@pytest.mark.parametrize(
    "claims",
    [
        {"email": "ana@example.com", "aud": "authenticated"},
        {"sub": "U1", "aud": "someone-else"},
    ],
)
def test_invalid_claims_are_rejected(claims):
    with pytest.raises(HTTPException) as excinfo:
        decode_session_token(_encode(claims), SETTINGS)

    assert excinfo.value.status_code == 401


def test_audience_check_can_be_disabled():
    settings = Settings(session_secret="s3cret", session_audience=None)

    claims = decode_session_token(_encode({"sub": "U1"}), settings)

    assert claims.email == ""


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (InvalidStatus("bad"), 422),
        (AuthorizationError("no"), 403),
        (TicketNotFoundError("gone"), 404),
        (MutationFailedError("down"), 503),
        (AuditWriteError("half"), 500),
    ],
)
def test_engine_errors_map_to_http_status(error, status_code):
    assert http_error(error).status_code == status_code


def test_persistence_errors_report_whether_the_write_landed():
    detail = http_error(AuditWriteError("audit down")).detail

    assert detail == {"message": "audit down", "mutation_applied": True}


def test_deactivated_accounts_are_told_to_sign_out():
    exc = http_error(AccountDeactivated("U1"))

    assert exc.status_code == 403
    assert exc.headers == {FORCE_SIGN_OUT_HEADER: "true"}
