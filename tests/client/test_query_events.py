"""Tests for query/log events and SQL comments (cyberhub/client/events.py)."""

import logging
from types import SimpleNamespace

import pytest

from cyberhub.client import CyberHubClient, LogDefinition, LogEvent, QueryContext, QueryEvent, render_sql_comment
from cyberhub.client.events import EventEmitter
from cyberhub.db.engine import init_db
from cyberhub.exceptions import UniqueConstraintError

MEMORY_URL = "sqlite+aiosqlite://"


async def _client(**options):
    client = CyberHubClient(datasource_url=MEMORY_URL, **options)
    await client.connect()
    await init_db(client.engine)
    return client


class TestRenderSqlComment:
    def test_sorted_and_url_encoded(self):
        assert render_sql_comment({"model": "user", "action": "find many"}) == "/*action='find%20many',model='user'*/"

    def test_empty_tags(self):
        assert render_sql_comment({}) == ""


class TestQueryEvents:
    async def test_query_events_delivered_to_callbacks(self):
        client = await _client(log=[LogDefinition("query", emit="event")])
        events = []
        client.on("query", events.append)
        try:
            await client.organization.create({"name": "Org"})
        finally:
            await client.disconnect()
        assert events
        assert all(isinstance(e, QueryEvent) for e in events)
        insert = next(e for e in events if e.query.startswith("INSERT INTO organizations"))
        assert insert.duration >= 0
        assert "Org" in insert.params

    async def test_query_level_disabled_by_default(self):
        client = await _client()
        events = []
        client.on("query", events.append)
        try:
            await client.organization.count()
        finally:
            await client.disconnect()
        assert events == []

    async def test_stdout_levels_go_to_logger(self, caplog):
        client = await _client(log=["query"])
        try:
            with caplog.at_level(logging.INFO, logger="cyberhub.client.query"):
                await client.organization.count()
        finally:
            await client.disconnect()
        assert any(r.name == "cyberhub.client.query" and "SELECT count" in r.getMessage() for r in caplog.records)

    async def test_error_log_event_on_failed_query(self):
        client = await _client(log=[LogDefinition("error", emit="event")])
        errors = []
        client.on("error", errors.append)
        try:
            await client.computer.create({"name": "A", "device_token": "a"})
            with pytest.raises(UniqueConstraintError):
                await client.computer.create({"name": "B", "device_token": "a"})
        finally:
            await client.disconnect()
        assert len(errors) == 1
        assert isinstance(errors[0], LogEvent)
        assert "Unique constraint failed" in errors[0].message

    async def test_unknown_event_name(self):
        client = CyberHubClient(datasource_url=MEMORY_URL)
        with pytest.raises(ValueError):
            client.on("debug", print)


class TestSqlComments:
    async def test_plugins_tag_statements_with_model_and_action(self):
        seen = []

        def tags(ctx: QueryContext):
            seen.append(ctx)
            return {"model": ctx.model or "raw", "action": ctx.action}

        client = await _client(log=[LogDefinition("query", emit="event")], comments=[tags])
        events = []
        client.on("query", events.append)
        try:
            await client.computer.find_many()
            await client.query_raw("SELECT 1 AS one")
        finally:
            await client.disconnect()

        statements = [e.query for e in events]
        assert any(
            s.startswith("SELECT") and s.endswith("/*action='find_many',model='computer'*/") for s in statements
        )
        assert any(s.endswith("/*action='query_raw',model='raw'*/") for s in statements)
        assert QueryContext(model="computer", action="find_many") in seen

    async def test_plugins_merge_tags(self):
        client = await _client(
            log=[LogDefinition("query", emit="event")],
            comments=[lambda ctx: {"app": "cyberhub"}, lambda ctx: {"route": "/sessions"}],
        )
        events = []
        client.on("query", events.append)
        try:
            await client.session.count()
        finally:
            await client.disconnect()
        assert any(e.query.endswith("/*app='cyberhub',route='%2Fsessions'*/") for e in events)


class TestStatementTiming:
    def test_start_time_lives_on_the_execution_context(self):
        emitter = EventEmitter({"query": LogDefinition("query", emit="event")})
        events = []
        emitter.on("query", events.append)
        conn = SimpleNamespace(info={})

        # a statement that fails never gets its after hook
        failed = SimpleNamespace()
        emitter._before_cursor_execute(conn, None, "INSERT INTO t VALUES (1)", (), failed, False)
        assert conn.info == {}

        ok = SimpleNamespace()
        emitter._before_cursor_execute(conn, None, "SELECT 1", (), ok, False)
        emitter._after_cursor_execute(conn, None, "SELECT 1", (), ok, False)
        assert conn.info == {}
        assert [e.query for e in events] == ["SELECT 1"]

    async def test_failed_statements_do_not_break_later_timing(self):
        client = await _client(log=[LogDefinition("query", emit="event")])
        events = []
        client.on("query", events.append)
        try:
            await client.computer.create({"name": "A", "device_token": "a"})
            for _ in range(3):
                with pytest.raises(UniqueConstraintError):
                    await client.computer.create({"name": "B", "device_token": "a"})
            events.clear()
            await client.computer.count()
        finally:
            await client.disconnect()
        assert any("count" in e.query.lower() for e in events)
        assert all(e.duration >= 0 for e in events)
