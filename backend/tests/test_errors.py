# tests/test_errors.py — Error hierarchy and status mapping
import logging

import pytest

from errors import (
    MBEEError, DataFormatError, ValidationError, AuthorizationError, PermissionDeniedError,
    OperationError, NotFoundError, ServerError, DatabaseError, get_status_code, capture_error,
)


@pytest.mark.parametrize(
    "error,status",
    [
        (DataFormatError("bad"), 400),
        (ValidationError("id", "bad id"), 400),
        (AuthorizationError("who"), 401),
        (PermissionDeniedError("no"), 403),
        (OperationError("not now"), 403),
        (NotFoundError("gone"), 404),
        (ServerError("boom"), 500),
        (DatabaseError("db"), 500),
        (KeyError("x"), 500),
    ],
)
def test_status_codes(error, status):
    assert get_status_code(error) == status


def test_get_status_code_requires_an_exception():
    with pytest.raises(ServerError):
        get_status_code("not an error")


def test_capture_error_wraps_foreign_errors():
    original = ValueError("broken")
    wrapped = capture_error(original)
    assert isinstance(wrapped, ServerError)
    assert wrapped.message == "broken"
    assert wrapped.__cause__ is original


def test_capture_error_passes_mbee_errors_through():
    error = NotFoundError("gone")
    assert capture_error(error) is error


def test_level_logs_on_creation(caplog):
    with caplog.at_level(logging.WARNING, logger="mbee.errors"):
        MBEEError("something odd", "warn")
    assert "something odd" in caplog.text


def test_validation_error_keeps_field():
    error = ValidationError("email", "Invalid email [x].")
    assert error.field == "email"
    assert str(error) == "Invalid email [x]."
