"""Unit tests for the stdin/stdout JSON bridge."""

import io
import json

import pytest

from host_relay.ipc.messages import (
    InitResource,
    JobOutputChunk,
    PingHost,
    ResourceReady,
    RunJob,
)
from host_relay.ipc.stdio_bridge import (
    HostCommunicationError,
    HostStdioHandler,
    InvalidCommandError,
    decode_host_event,
    encode_message,
)


class TestCoordinatorSide:
    """encode_message / decode_host_event."""

    def test_encode_is_one_line(self):
        data = encode_message(RunJob(job_id="j1", input="line one\nline two"))

        assert data.endswith(b"\n")
        assert data.count(b"\n") == 1
        assert json.loads(data)["input"] == "line one\nline two"

    def test_decode_event(self):
        event = decode_host_event(b'{"type": "resource_ready", "memory_gb": 1.25}\n')

        assert isinstance(event, ResourceReady)
        assert event.memory_gb == 1.25

    @pytest.mark.parametrize("line", [
        b"\n",
        b"not json\n",
        b'{"type": "unknown_event"}\n',
        b'{"type": "init_resource", "resource_locator": "x"}\n',
    ])
    def test_decode_rejects_invalid(self, line):
        with pytest.raises(HostCommunicationError):
            decode_host_event(line)


class TestHostStdioHandler:
    """Host-side reads and writes."""

    def test_receive_commands_until_eof(self):
        stdin = io.StringIO(
            encode_message(InitResource(resource_locator="echo:x")).decode()
            + encode_message(PingHost()).decode()
        )
        handler = HostStdioHandler(stdin=stdin, stdout=io.StringIO())

        assert handler.receive_command() == InitResource(resource_locator="echo:x")
        assert isinstance(handler.receive_command(), PingHost)
        assert handler.receive_command() is None

    def test_invalid_command_raises(self):
        handler = HostStdioHandler(stdin=io.StringIO("garbage\n"), stdout=io.StringIO())

        with pytest.raises(InvalidCommandError):
            handler.receive_command()

    def test_events_written_as_lines(self):
        stdout = io.StringIO()
        handler = HostStdioHandler(stdin=io.StringIO(), stdout=stdout)

        handler.send_progress(40)
        handler.send_chunk("ab ", job_id="j1")
        handler.send_run_error("boom", error_type="RuntimeError", job_id="j1")

        lines = [decode_host_event(line) for line in stdout.getvalue().splitlines()]
        assert [e.type for e in lines] == ["resource_progress", "job_output_chunk", "run_error"]
        assert lines[1] == JobOutputChunk(job_id="j1", text="ab ")
        assert lines[2].error_type == "RuntimeError"
