"""
Tests for the CLI interface.
"""

import os
import tempfile
import uuid
from datetime import timedelta

import pytest
from typer.testing import CliRunner

from access_guard.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from access_guard.core.clock import utc_now
from access_guard.core.plans import Feature, SubscriptionPlan
from access_guard.storage.models import TokenUsageRecord, UserSubscription
from access_guard.storage.repository import SqliteSubscriptionStore

runner = CliRunner()


def _seed(db_path, remaining=50, used=0, days_ago=1, user_id="user-1"):
    start = utc_now() - timedelta(days=days_ago)
    store = SqliteSubscriptionStore(db_path)
    store.create_subscription(UserSubscription(
        user_id=user_id,
        plan=SubscriptionPlan.FREE,
        tokens_remaining=remaining,
        tokens_used=used,
        last_reset_at=start,
        next_reset_at=start + timedelta(days=30),
    ))
    return store


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "cli.db")
            result = runner.invoke(app, ["init", "--db", db_path])

            assert result.exit_code == EXIT_CODE_PASS
            assert "Database initialized successfully" in result.output
            assert os.path.exists(db_path)

    def test_init_failure(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            result = runner.invoke(app, ["init", "--db", os.path.join(temp_dir, "no", "cli.db")])
            assert result.exit_code == EXIT_CODE_FAIL
            assert "Error initializing database" in result.output

    def test_plans(self):
        result = runner.invoke(app, ["plans"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Starter" in result.output
        assert "$19.99" in result.output
        assert "tokens_100" in result.output

    def test_status_new_user(self, db_path):
        result = runner.invoke(app, ["status", "user-1", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Plan: Free" in result.output
        assert "Tokens remaining: 50" in result.output
        assert "State: active" in result.output

    def test_status_low_balance(self, db_path):
        _seed(db_path, remaining=4, used=46)
        result = runner.invoke(app, ["status", "user-1", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "92%" in result.output
        assert "Balance is low" in result.output

    def test_status_degraded(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "missing", "cli.db")
            result = runner.invoke(app, ["status", "user-1", "--db", db_path])

            assert result.exit_code == EXIT_CODE_PASS
            assert "database unavailable" in result.output

    def test_status_with_bad_config(self, db_path):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = os.path.join(temp_dir, "config.yaml")
            with open(config_path, 'w', encoding='utf-8') as f:
                f.write("unknown_section: 1\n")

            result = runner.invoke(app, ["status", "user-1", "--db", db_path, "--config", config_path])

            assert result.exit_code == EXIT_CODE_FAIL
            assert "Unknown configuration keys" in result.output

    def test_history_empty(self, db_path):
        _seed(db_path)
        result = runner.invoke(app, ["history", "user-1", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No token usage recorded" in result.output

    def test_history(self, db_path):
        store = _seed(db_path)
        store.insert_usage(TokenUsageRecord(
            id=str(uuid.uuid4()),
            user_id="user-1",
            feature=Feature.DEEP_SEARCH,
            tokens_used=10,
            created_at=utc_now(),
            document_name="nda.pdf",
        ))

        result = runner.invoke(app, ["history", "user-1", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "DEEP_SEARCH" in result.output
        assert "nda.pdf" in result.output

    def test_renew(self, db_path):
        _seed(db_path, remaining=0, used=50, days_ago=31, user_id="user-a")
        _seed(db_path, remaining=20, used=30, days_ago=2, user_id="user-b")

        result = runner.invoke(app, ["renew", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Renewed 1 subscription(s)" in result.output
        assert SqliteSubscriptionStore(db_path).get_subscription("user-a").tokens_remaining == 50

    def test_purchase(self, db_path):
        _seed(db_path, remaining=4, used=46)

        result = runner.invoke(app, ["purchase", "user-1", "tokens_100", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Added 100 tokens to user-1" in result.output
        assert SqliteSubscriptionStore(db_path).get_subscription("user-1").tokens_remaining == 104

    @pytest.mark.parametrize("package_id", ["tokens_7", "TOKENS_100"])
    def test_purchase_invalid_package(self, db_path, package_id):
        result = runner.invoke(app, ["purchase", "user-1", package_id, "--db", db_path])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid token package" in result.output

    def test_purchase_degraded_is_refused(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "missing", "cli.db")
            result = runner.invoke(app, ["purchase", "user-1", "tokens_50", "--db", db_path])

            assert result.exit_code == EXIT_CODE_FAIL
            assert "purchase was not recorded" in result.output
