"""Tests for error translation and formatting (cyberhub/client/errors.py)."""

import pytest
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import IntegrityError, InternalError, OperationalError

from cyberhub.client import CyberHubClient
from cyberhub.client.errors import format_message, translate_db_error, validation_error
from cyberhub.exceptions import (
    ClientKnownRequestError,
    ClientUnknownRequestError,
    ClientValidationError,
    EnginePanicError,
    ForeignKeyConstraintError,
    UniqueConstraintError,
)


def _integrity(message: str) -> IntegrityError:
    return IntegrityError("INSERT ...", {}, Exception(message))


class TestFormatMessage:
    def test_minimal_is_bare(self):
        assert format_message("boom", "user", "create", "minimal") == "boom"

    def test_colorless_has_invocation_header(self):
        text = format_message("boom", "user", "create", "colorless")
        assert text == "Invalid `client.user.create()` invocation:\n\nboom"

    def test_pretty_is_colored(self):
        text = format_message("boom", "user", "create", "pretty")
        assert text.startswith("\x1b[31m")
        assert "client.user.create()" in text

    def test_raw_queries_have_no_model(self):
        assert "`client.query_raw()`" in format_message("boom", None, "query_raw", "colorless")


class TestTranslateDbError:
    def test_sqlite_unique(self):
        error = translate_db_error(
            _integrity("UNIQUE constraint failed: computers.device_token"), "computer", "create", "minimal"
        )
        assert isinstance(error, UniqueConstraintError)
        assert error.meta["target"] == ["device_token"]
        assert str(error) == "Unique constraint failed on the fields: (`device_token`)"

    def test_postgres_unique(self):
        error = translate_db_error(
            _integrity(
                'duplicate key value violates unique constraint "users_email_key"\n'
                "DETAIL:  Key (email)=(ada@example.com) already exists."
            ),
            "user",
            "create",
            "minimal",
        )
        assert isinstance(error, UniqueConstraintError)
        assert error.meta["target"] == ["email"]

    def test_foreign_key(self):
        error = translate_db_error(
            _integrity(
                'insert or update on table "sessions" violates foreign key constraint "sessions_computer_id_fkey"'
            ),
            "session",
            "create",
            "minimal",
        )
        assert isinstance(error, ForeignKeyConstraintError)
        assert error.meta["field_name"] == "sessions_computer_id_fkey"

    def test_not_null(self):
        error = translate_db_error(
            _integrity("NOT NULL constraint failed: computers.name"), "computer", "create", "minimal"
        )
        assert type(error) is ClientKnownRequestError
        assert error.code == "P2011"
        assert error.meta["constraint"] == ["name"]

    def test_internal_error_is_engine_panic(self):
        exc = InternalError("SELECT 1", {}, Exception("internal"))
        assert isinstance(translate_db_error(exc, None, "query_raw", "minimal"), EnginePanicError)

    def test_other_driver_errors_are_unknown(self):
        exc = OperationalError("SELECT 1", {}, Exception("database is locked"))
        error = translate_db_error(exc, "user", "find_many", "minimal")
        assert isinstance(error, ClientUnknownRequestError)
        assert "database is locked" in str(error)


class _PriceForm(BaseModel):
    price_per_minute: int


class TestValidationError:
    def test_lists_each_failing_argument(self):
        with pytest.raises(ValidationError) as info:
            _PriceForm.model_validate({"price_per_minute": "lots"})
        error = validation_error(info.value, "pricing", "create", "minimal")
        assert isinstance(error, ClientValidationError)
        assert str(error).startswith("Argument `price_per_minute`:")

    async def test_error_format_follows_client(self):
        client = CyberHubClient(datasource_url="sqlite+aiosqlite://", error_format="minimal")
        with pytest.raises(ClientValidationError) as info:
            await client.pricing.create({"price_per_minute": "lots"})
        assert not str(info.value).startswith("Invalid")
