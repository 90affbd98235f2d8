"""Unit tests for PostgresStore error handling (no database needed)."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock, patch

import psycopg
import pytest

from shoplens.errors import ConflictError, PersistenceError
from shoplens.storage.postgres import PostgresStore


@pytest.fixture()
def conn():
    conn = MagicMock()
    conn.__enter__.return_value = conn
    return conn


@pytest.fixture()
def pg_store(conn):
    with patch("shoplens.storage.postgres.psycopg.connect", return_value=conn):
        yield PostgresStore("postgresql://unused@localhost/unused")


class TestTransactionErrors:
    def test_unique_violation_is_conflict_without_traceback(self, pg_store, conn, caplog):
        conn.execute.side_effect = psycopg.errors.UniqueViolation("duplicate key")

        with caplog.at_level(logging.INFO, logger="shoplens.storage.postgres"):
            with pytest.raises(ConflictError):
                pg_store.create_tenant(name="Acme", slug="acme", api_key="k")

        assert caplog.records
        assert all(r.levelno < logging.ERROR and r.exc_info is None for r in caplog.records)

    def test_other_errors_logged_with_traceback(self, pg_store, conn, caplog):
        conn.execute.side_effect = psycopg.errors.SerializationFailure("conflict")

        with caplog.at_level(logging.INFO, logger="shoplens.storage.postgres"):
            with pytest.raises(PersistenceError) as exc:
                with pg_store.transaction() as tx:
                    tx.find_order_id(1, "o1")

        assert not isinstance(exc.value, ConflictError)
        assert any(r.levelno == logging.ERROR and r.exc_info for r in caplog.records)

    def test_transaction_executes_on_its_connection(self, pg_store, conn):
        conn.execute.return_value.fetchone.return_value = {"id": 7}
        with pg_store.transaction() as tx:
            assert tx.find_order_id(1, "o1") == 7
        sql, params = conn.execute.call_args.args
        assert "FROM orders" in sql
        assert params == (1, "o1")
