"""Tests for the exception hierarchy (cyberhub/exceptions.py)."""

import pytest

from cyberhub.exceptions import (
    AuthenticationError,
    ClientInitializationError,
    ClientKnownRequestError,
    ClientUnknownRequestError,
    ClientValidationError,
    ConfigurationError,
    ConflictError,
    CyberHubException,
    EnginePanicError,
    ForbiddenError,
    ForeignKeyConstraintError,
    InsufficientBalanceError,
    RecordNotFoundError,
    TransactionError,
    UniqueConstraintError,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "exc_type",
        [
            ConfigurationError,
            ClientKnownRequestError,
            ClientUnknownRequestError,
            EnginePanicError,
            ClientInitializationError,
            ClientValidationError,
            ConflictError,
            AuthenticationError,
            ForbiddenError,
        ],
    )
    def test_everything_is_a_cyberhub_exception(self, exc_type):
        assert issubclass(exc_type, CyberHubException)

    def test_insufficient_balance_is_a_conflict(self):
        assert issubclass(InsufficientBalanceError, ConflictError)

    def test_forbidden_is_not_an_authentication_failure(self):
        assert not issubclass(ForbiddenError, AuthenticationError)

    def test_validation_error_is_a_value_error(self):
        assert issubclass(ClientValidationError, ValueError)


class TestKnownRequestCodes:
    @pytest.mark.parametrize(
        "exc_type, code",
        [
            (UniqueConstraintError, "P2002"),
            (ForeignKeyConstraintError, "P2003"),
            (RecordNotFoundError, "P2025"),
            (TransactionError, "P2028"),
        ],
    )
    def test_class_codes(self, exc_type, code):
        exc = exc_type("boom")
        assert exc.code == code
        assert isinstance(exc, ClientKnownRequestError)

    def test_meta_defaults_to_empty_dict(self):
        assert UniqueConstraintError("dup").meta == {}

    def test_explicit_code_and_meta(self):
        exc = ClientKnownRequestError("null", code="P2011", meta={"constraint": ["name"]})
        assert exc.code == "P2011"
        assert exc.meta == {"constraint": ["name"]}
        assert str(exc) == "null"
