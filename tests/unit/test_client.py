"""Unit tests for RelayClient."""

from unittest.mock import MagicMock, Mock

import pytest
import requests

from host_relay.client import RelayClient
from host_relay.coordinator.errors import BusyError, InitError, NotReadyError, RunError
from host_relay.ipc.messages import ResourceStatus


def json_response(data, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = data
    response.headers = {"content-type": "application/json"}
    response.__enter__.return_value = response
    return response


def sse_response(lines):
    response = MagicMock()
    response.status_code = 200
    response.headers = {"content-type": "text/event-stream; charset=utf-8"}
    response.iter_lines.return_value = iter(lines)
    response.__enter__.return_value = response
    return response


STATUS_NOT_LOADED = {"status": "not_loaded", "detail_message": None, "progress_percent": None}


@pytest.fixture
def session():
    session = Mock(spec=requests.Session)
    session.get.return_value = json_response(STATUS_NOT_LOADED)
    return session


class TestRecovery:

    def test_status_recovered_on_construction(self, session):
        session.get.return_value = json_response(
            {"status": "loading", "detail_message": "Loading resource", "progress_percent": 40}
        )

        client = RelayClient("http://relay:1234/", session=session)

        session.get.assert_called_once_with("http://relay:1234/v1/status", timeout=None)
        assert client.status.status == ResourceStatus.LOADING
        assert client.status.progress_percent == 40

    def test_recovery_can_be_deferred(self, session):
        client = RelayClient(session=session, recover=False)

        assert client.status is None
        session.get.assert_not_called()

    def test_wait_until_ready(self, session, mocker):
        mocker.patch("host_relay.client.time.sleep")
        session.get.side_effect = [
            json_response({"status": "loading", "progress_percent": 50}),
            json_response({"status": "ready", "progress_percent": 100}),
        ]
        client = RelayClient(session=session, recover=False)

        assert client.wait_until_ready().status == ResourceStatus.READY

    def test_wait_until_ready_failed(self, session):
        session.get.return_value = json_response(
            {"status": "failed", "detail_message": "Resource not found"}
        )
        client = RelayClient(session=session, recover=False)

        with pytest.raises(InitError, match="Resource not found"):
            client.wait_until_ready()


class TestMessages:

    def test_ping(self, session):
        session.post.return_value = json_response({"type": "pong", "ok": True})
        client = RelayClient(session=session)

        assert client.ping() is True
        assert session.post.call_args.kwargs["json"] == {"type": "ping"}

    def test_load_resource(self, session):
        session.post.return_value = json_response(
            {"type": "load_started", "started": True, "status": "loading"}
        )
        client = RelayClient(session=session)

        assert client.load_resource().status == ResourceStatus.LOADING

    def test_submit_job(self, session):
        session.post.return_value = json_response(
            {"type": "job_output", "job_id": "j1", "output": "hello"}
        )
        client = RelayClient(session=session)

        assert client.submit_job("hello") == "hello"
        assert session.post.call_args.kwargs["json"] == {
            "type": "submit_job", "input": "hello", "stream": False
        }

    @pytest.mark.parametrize("kind,status_code,error_cls", [
        ("not_ready", 409, NotReadyError),
        ("busy", 429, BusyError),
        ("run_error", 502, RunError),
    ])
    def test_error_replies_raise_typed_errors(self, session, kind, status_code, error_cls):
        session.post.return_value = json_response(
            {"type": "error", "kind": kind, "message": "nope"}, status_code=status_code
        )
        client = RelayClient(session=session)

        with pytest.raises(error_cls, match="nope"):
            client.submit_job("x")

    def test_stream_job(self, session):
        session.post.return_value = sse_response([
            "event: output_chunk",
            'data: {"type": "output_chunk", "job_id": "j1", "text": "ab "}',
            "",
            "event: output_chunk",
            'data: {"type": "output_chunk", "job_id": "j1", "text": "cd"}',
            "",
            "event: job_output",
            'data: {"type": "job_output", "job_id": "j1", "output": "ab cd"}',
            "",
        ])
        client = RelayClient(session=session)

        assert list(client.stream_job("ab cd")) == ["ab ", "cd"]
        assert session.post.call_args.kwargs["stream"] is True

    def test_stream_job_raw_bytes(self, session):
        session.post.return_value = sse_response([
            'data: {"type": "output_chunk", "text": "ok "}',
            'data: {"type": "output_chunk", "text": "\\u00ff", "raw": true}',
            'data: {"type": "job_output", "output": "ok \\u00ff", "raw": true}',
        ])
        client = RelayClient(session=session)

        chunks = list(client.stream_job("x"))

        assert "".join(chunks).encode("utf-8", "surrogateescape") == b"ok \xff"

    def test_stream_job_error_before_start(self, session):
        session.post.return_value = json_response(
            {"type": "error", "kind": "busy", "message": "still running"}, status_code=429
        )
        client = RelayClient(session=session)

        with pytest.raises(BusyError):
            list(client.stream_job("x"))

    def test_stream_job_run_error(self, session):
        session.post.return_value = sse_response([
            'data: {"type": "output_chunk", "text": "partial "}',
            'data: {"type": "error", "kind": "run_error", "message": "engine crashed"}',
        ])
        client = RelayClient(session=session)

        stream = client.stream_job("x")
        assert next(stream) == "partial "
        with pytest.raises(RunError, match="engine crashed"):
            next(stream)

    def test_iter_events(self, session):
        client = RelayClient(session=session)
        session.get.return_value = sse_response([
            'data: {"type": "status_changed", "status": "loading", "progress_percent": 40}',
            'data: {"type": "status_changed", "status": "ready", "progress_percent": 100}',
        ])

        statuses = [e.status for e in client.iter_events()]

        assert statuses == [ResourceStatus.LOADING, ResourceStatus.READY]
