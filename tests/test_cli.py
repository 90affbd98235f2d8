"""Tests for the operator CLI."""

from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from shoplens import cli
from shoplens.config import Settings

from tests.conftest import SECRET, InMemoryStore, sign


@pytest.fixture()
def cli_settings():
    return Settings(shopify_api_secret=SECRET, redis_url="")


class TestParser:
    def test_serve_defaults(self):
        args = cli.build_parser().parse_args(["serve"])
        assert (args.host, args.port) == ("0.0.0.0", 4000)

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_send_webhook_kinds(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["send-webhook", "refunds_create"])


class TestCommands:
    def test_seed_is_rerunnable(self, cli_settings, capsys):
        store = InMemoryStore()
        with patch.object(cli, "_store", return_value=store):
            cli.cmd_seed(cli.build_parser().parse_args(["seed"]), cli_settings)
            cli.cmd_seed(cli.build_parser().parse_args(["seed"]), cli_settings)

        assert store.schema_initialized
        assert len(store.tenants) == 1
        assert len(store.orders) == 2
        assert len(store.products) == 2
        tenant = store.tenants[0]
        assert store.customer(tenant.id, "cust-1").total_spend == Decimal("79.99")
        assert "Seed complete" in capsys.readouterr().out

    def test_create_tenant_prints_key(self, cli_settings, capsys):
        store = InMemoryStore()
        with patch.object(cli, "_store", return_value=store):
            cli.cmd_create_tenant(
                cli.build_parser().parse_args(["create-tenant", "Acme Store"]), cli_settings
            )
        out = json.loads(capsys.readouterr().out)
        assert out["slug"] == "acme-store"
        assert store.get_tenant_by_api_key(out["apiKey"]) is not None

    def test_rotate_key(self, cli_settings, capsys):
        store = InMemoryStore()
        tenant = store.create_tenant(name="A", slug="a", api_key="old-key")
        with patch.object(cli, "_store", return_value=store):
            cli.cmd_rotate_key(
                cli.build_parser().parse_args(["rotate-key", "--api-key", "old-key"]), cli_settings
            )
        out = json.loads(capsys.readouterr().out)
        assert out["id"] == tenant.id
        assert store.get_tenant_by_api_key("old-key") is None

    def test_send_webhook_signs_body(self, cli_settings):
        with patch.object(cli.httpx, "post", return_value=MagicMock(status_code=200, text="ok")) as post:
            cli.cmd_send_webhook(
                cli.build_parser().parse_args(["send-webhook", "orders_create"]), cli_settings
            )
        kwargs = post.call_args.kwargs
        assert kwargs["headers"]["X-Shopify-Topic"] == "orders/create"
        assert kwargs["headers"]["X-Shopify-Hmac-Sha256"] == sign(kwargs["content"])

    def test_send_webhook_needs_secret(self):
        with pytest.raises(SystemExit):
            cli.cmd_send_webhook(
                cli.build_parser().parse_args(["send-webhook", "orders_create"]),
                Settings(shopify_api_secret=""),
            )

    def test_main_reports_errors(self, capsys):
        store = InMemoryStore()
        with patch.object(cli, "_store", return_value=store), patch.object(
            cli, "get_settings", return_value=Settings(redis_url="")
        ):
            with pytest.raises(SystemExit) as exc:
                cli.main(["rotate-key", "--api-key", "unknown"])
        assert exc.value.code == 1
        assert "invalid_credential" in capsys.readouterr().err
