"""Tests for CLI commands."""

import pytest
from click.testing import CliRunner
from unittest.mock import AsyncMock

from feedback_relay.cli import cli
from feedback_relay.poller.client import BrokerClient
from feedback_relay.protocol import BrokerSnapshot, FeedbackRequest


@pytest.fixture(autouse=True)
def quiet_logging(mocker):
    """Keep CLI runs from reconfiguring global logging."""
    return mocker.patch("feedback_relay.cli.setup_logging")


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "relay.toml"
    path.write_text("base_port = 6100\nscan_range = 3\n")
    return str(path)


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_status_no_brokers(mocker, config_file):
    mocker.patch.object(BrokerClient, "health", new_callable=AsyncMock, return_value=None)
    mocker.patch.object(BrokerClient, "fetch_current", new_callable=AsyncMock, return_value=None)

    result = CliRunner().invoke(cli, ["status", "-c", config_file])

    assert result.exit_code == 0
    assert "No brokers on ports 6100-6102" in result.output


def test_status_lists_brokers(mocker, config_file):
    async def health(port):
        return {"status": "ok", "version": "0.1.0", "hasCurrentRequest": True, "pid": 4242} if port == 6101 else None

    async def fetch_current(port, workspace=None, latest_start_time=None):
        if port != 6101:
            return None
        request = FeedbackRequest(id="req_1", summary="s", project_directory="/p", timeout_seconds=5)
        return BrokerSnapshot(port=port, request=request, owner_workspace="/p", start_time=1)

    mocker.patch.object(BrokerClient, "health", side_effect=health)
    mocker.patch.object(BrokerClient, "fetch_current", side_effect=fetch_current)

    result = CliRunner().invoke(cli, ["status", "-c", config_file])

    assert result.exit_code == 0
    assert "6101" in result.output
    assert "4242" in result.output
    assert "req_1" in result.output


def test_stop(mocker):
    shutdown = mocker.patch.object(BrokerClient, "request_shutdown", new_callable=AsyncMock, return_value=True)

    result = CliRunner().invoke(cli, ["stop", "6200"])

    assert result.exit_code == 0
    assert "shutting down" in result.output
    shutdown.assert_awaited_once_with(6200)


def test_stop_without_broker(mocker):
    mocker.patch.object(BrokerClient, "request_shutdown", new_callable=AsyncMock, return_value=False)

    result = CliRunner().invoke(cli, ["stop", "6200"])

    assert result.exit_code == 1
    assert "No broker answered" in result.output


def test_config_shows_settings(config_file):
    result = CliRunner().invoke(cli, ["config", "-c", config_file])

    assert result.exit_code == 0
    assert "base_port" in result.output
    assert "6100" in result.output
    assert "Configuration OK" in result.output


def test_config_save(config_file, tmp_path):
    target = tmp_path / "out.toml"

    result = CliRunner().invoke(cli, ["config", "-c", config_file, "--save", str(target)])

    assert result.exit_code == 0
    assert "base_port = 6100" in target.read_text()


def test_broker_command_runs_broker(mocker, config_file):
    run = mocker.patch("feedback_relay.broker.run_broker", new_callable=AsyncMock, return_value="stdin_closed")

    result = CliRunner().invoke(cli, ["broker", "-c", config_file])

    assert result.exit_code == 0
    assert run.await_args.args[0].base_port == 6100
