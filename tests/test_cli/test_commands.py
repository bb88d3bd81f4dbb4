"""Tests for the click CLI with the engine wiring patched out."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from src.alerts.schemas import Notification
from src.cli import main


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def engine():
    service = AsyncMock()
    dispatcher = AsyncMock()
    parts = {"db": AsyncMock(), "service": service, "dispatcher": dispatcher}

    @asynccontextmanager
    async def fake_engine(with_dispatcher=True):
        parts["with_dispatcher"] = with_dispatcher
        yield parts

    with patch("src.cli._engine", fake_engine):
        yield parts


class TestEvaluate:
    def test_requires_target(self, runner):
        result = runner.invoke(main, ["evaluate"])
        assert result.exit_code == 2
        assert "--user-id or --transaction-id" in result.output

    def test_user_run(self, runner, engine):
        engine["service"].evaluate_user.return_value = [
            Notification(user_id=7, title="Low balance", message="below $100", metadata={"alert_type": "account_threshold"}),
        ]

        result = runner.invoke(main, ["evaluate", "--user-id", "7", "--mode", "scheduled"])

        assert result.exit_code == 0
        assert "Created 1 notification(s)" in result.output
        assert "[account_threshold] Low balance" in result.output
        context = engine["service"].evaluate_user.await_args.args[0]
        assert context.user_id == 7
        assert context.trigger_mode == "scheduled"

    def test_transaction_run_without_delivery(self, runner, engine):
        engine["service"].evaluate_transaction.return_value = []

        result = runner.invoke(main, ["evaluate", "--transaction-id", "77", "--no-deliver"])

        assert result.exit_code == 0
        engine["service"].evaluate_transaction.assert_awaited_once_with(77)
        assert engine["with_dispatcher"] is False

    def test_infrastructure_failure_exits_nonzero(self, runner, engine):
        engine["service"].evaluate_user.side_effect = ConnectionError("db unreachable")

        result = runner.invoke(main, ["evaluate", "--user-id", "7"])

        assert result.exit_code == 1


class TestBatchCommands:
    def test_evaluate_all(self, runner, engine):
        engine["service"].evaluate_all.return_value = 12

        result = runner.invoke(main, ["evaluate-all", "--mode", "daily"])

        assert result.exit_code == 0
        assert "daily run created 12 notification(s)" in result.output
        engine["service"].evaluate_all.assert_awaited_once_with("daily")

    def test_deliver_pending_summary(self, runner, engine):
        engine["dispatcher"].deliver_pending.return_value = {"sent": 3, "deferred": 1}

        result = runner.invoke(main, ["deliver-pending", "--limit", "10"])

        assert result.exit_code == 0
        assert "deferred: 1" in result.output
        engine["dispatcher"].deliver_pending.assert_awaited_once_with(10)

    def test_nothing_pending(self, runner, engine):
        engine["dispatcher"].deliver_pending.return_value = {}
        result = runner.invoke(main, ["deliver-pending"])
        assert "No pending deliveries" in result.output


class TestDeadLetters:
    def test_replay_unknown(self, runner):
        with patch("src.storage.database.Database") as db_cls, \
                patch("src.notifications.dead_letter.DeadLetterSink") as sink_cls:
            db_cls.return_value = AsyncMock()
            sink_cls.return_value.replay = AsyncMock(return_value=None)

            result = runner.invoke(main, ["dead-letters", "replay", "dl-404"])

        assert result.exit_code == 1
        assert "already replayed" in result.output
