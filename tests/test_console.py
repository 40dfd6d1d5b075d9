"""Tests for the terminal editor host."""

import io

import pytest
from rich.console import Console

from feedback_relay.poller.console import ConsoleHost, ConsoleSession, split_answer
from feedback_relay.poller.messages import (
    ServerStatus,
    ServerStatusPayload,
    ShowFeedbackRequest,
    ShowWaiting,
)
from feedback_relay.poller.poller import DiscoveryPoller
from feedback_relay.protocol import FeedbackRequest


@pytest.fixture
def output():
    return io.StringIO()


@pytest.fixture
def console_host(tmp_path, output):
    return ConsoleHost([str(tmp_path)], console=Console(file=output, width=120))


def _request(project):
    return FeedbackRequest(id="req_1", summary="**Done** with parser", project_directory=project, timeout_seconds=60)


class TestSplitAnswer:
    def test_plain_text(self):
        assert split_answer("looks good") == ("looks good", [])

    def test_paths_extracted(self):
        assert split_answer("check @src/a.py and @b.py") == ("check and", ["src/a.py", "b.py"])

    def test_lone_at_sign_is_text(self):
        assert split_answer("email me @ home") == ("email me @ home", [])


class TestConsoleHost:
    """Tests for rendering poller messages."""

    async def test_request_panel(self, console_host, output, tmp_path):
        await console_host.post_message(ShowFeedbackRequest.for_request(_request(str(tmp_path))))

        text = output.getvalue()
        assert "Feedback requested" in text
        assert "Done with parser" in text

    async def test_waiting_printed_once(self, console_host, output):
        await console_host.post_message(ShowWaiting())
        await console_host.post_message(ShowWaiting())

        assert output.getvalue().count("Waiting for feedback requests") == 1

    async def test_status_printed_on_change(self, console_host, output):
        connected = ServerStatus(payload=ServerStatusPayload(connected=True, port=5678))
        await console_host.post_message(connected)
        await console_host.post_message(connected)
        await console_host.post_message(ServerStatus(payload=ServerStatusPayload(connected=False)))

        text = output.getvalue()
        assert text.count("Broker on port 5678") == 1
        assert "No broker running" in text

    def test_workspaces_resolved(self, console_host, tmp_path):
        assert console_host.workspace_paths() == [str(tmp_path.resolve())]


class TestConsoleSession:
    """Tests for answering from the terminal."""

    async def test_answer_current(self, console_host, config, mocker, tmp_path):
        poller = DiscoveryPoller(console_host, config)
        poller.current_request = _request(str(tmp_path))
        poller.active_port = 5680
        submit = mocker.patch.object(poller, "submit_answer", return_value=True)
        session = ConsoleSession(poller, console_host)
        mocker.patch.object(session, "read_answer", return_value="ship it @README.md")

        assert await session.answer_current() is True

        response = submit.await_args.args[0]
        assert response.request_id == "req_1"
        assert response.text == "ship it"
        assert response.attached_paths == ["README.md"]
        assert response.origin_directory == str(tmp_path.resolve())
        assert submit.await_args.kwargs["port"] == 5680

    async def test_nothing_to_answer(self, console_host, config):
        session = ConsoleSession(DiscoveryPoller(console_host, config), console_host)
        assert await session.answer_current() is None
