"""
Integration tests for PitchBridgeServer

The server runs against the scripted fake daemon; ffmpeg is replaced by a
normalizer that copies the input to its ``.proc.wav`` sibling. Host-bound
messages are captured from the IpcHandler's output buffer.
"""

import asyncio
import json
import shutil
from contextlib import asynccontextmanager
from io import BytesIO

import pytest

from main import PitchBridgeServer
from pitch_bridge.daemon_supervisor import DaemonState
from pitch_bridge.format_normalizer import FormatNormalizer, NormalizationError
from pitch_bridge.ipc_handler import IpcHandler


class CopyingNormalizer(FormatNormalizer):
    """Normalizer that copies instead of transcoding"""

    def __init__(self, fail=False):
        super().__init__(tool_path=None, search_paths=())
        self.fail = fail
        self.calls = []

    def find_tool(self):
        return "/fake/ffmpeg"

    async def normalize(self, input_path):
        self.calls.append(input_path)
        if self.fail:
            raise NormalizationError("ffmpeg failed with code 1: Invalid data")
        output_path = self.output_path_for(input_path)
        shutil.copyfile(input_path, output_path)
        return output_path


class HostOutput:
    """Reads back what the bridge sent to the host"""

    def __init__(self):
        self.buffer = BytesIO()

    def messages(self):
        return [json.loads(line) for line in self.buffer.getvalue().decode("utf-8").splitlines()]

    def events(self, event_type):
        return [
            message["data"] for message in self.messages()
            if message["type"] == "event" and message["eventType"] == event_type
        ]

    def event_types(self):
        return [message["eventType"] for message in self.messages() if message["type"] == "event"]

    def replies(self):
        return [message for message in self.messages() if message["type"] != "event"]


async def wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@asynccontextmanager
async def running_server(config, normalizer=None, start=True):
    server = PitchBridgeServer(config, normalizer=normalizer or CopyingNormalizer())
    host = HostOutput()
    server.ipc = IpcHandler(message_handler=server.handle_message, output=host.buffer)
    try:
        if start:
            await server.start()
        yield server, host
    finally:
        await server.shutdown()


def audio_file(directory, name):
    path = directory / name
    path.write_bytes(b"RIFF0000WAVE")
    return path


class TestSubmission:
    """Test the submit pipeline end to end"""

    @pytest.mark.asyncio
    async def test_wav_submission_completes(self, bridge_config, tmp_path):
        audio = audio_file(tmp_path, "take.wav")

        async with running_server(bridge_config) as (server, host):
            result = await server.submit(str(audio), request_id="r1")

            assert result["accepted"] is True
            assert result["key"] == str(audio)
            assert result["expectedOutputPath"] == str(tmp_path / "take.mid")

            await wait_for(lambda: host.events("processing-complete"))

            complete = host.events("processing-complete")[0]
            assert complete["name"] == "take.wav"
            assert complete["outputPath"] == str(tmp_path / "take.mid")
            assert complete["byteCount"] == 14
            assert complete["requestId"] == "r1"
            assert host.events("processing-started") == [
                {"name": "take.wav", "path": str(audio), "requestId": "r1"}
            ]
            assert host.events("processing-progress") == [{"name": "take.wav"}]
            assert server.get_pending_count() == 0
            stats = server.get_status()["stats"]
            assert stats["correlation"]["completed"] == 1
            assert stats["daemon"]["starts"] == 1

    @pytest.mark.asyncio
    async def test_compressed_input_normalized_and_cleaned_up(self, bridge_config, tmp_path):
        """GIVEN a.mp3
        WHEN it is submitted
        THEN a.proc.wav is sent to the daemon, the request completes on a.mid
        and the temporary file is deleted"""
        audio = audio_file(tmp_path, "a.mp3")
        normalizer = CopyingNormalizer()

        async with running_server(bridge_config, normalizer) as (server, host):
            result = await server.submit(str(audio))

            assert result["accepted"] is True
            assert result["key"] == str(tmp_path / "a.proc.wav")
            assert normalizer.calls == [str(audio)]

            await wait_for(lambda: host.events("processing-complete"))

            assert host.events("processing-complete")[0]["outputPath"] == str(tmp_path / "a.mid")
            assert not (tmp_path / "a.proc.wav").exists()
            assert audio.exists()

    @pytest.mark.asyncio
    async def test_forced_normalization(self, bridge_config, tmp_path):
        audio = audio_file(tmp_path, "b.wav")
        normalizer = CopyingNormalizer()

        async with running_server(bridge_config, normalizer) as (server, host):
            result = await server.submit(str(audio), normalize=True)

            assert result["key"] == str(tmp_path / "b.proc.wav")
            await wait_for(lambda: host.events("processing-complete"))
            assert not (tmp_path / "b.proc.wav").exists()

    @pytest.mark.asyncio
    async def test_normalization_failure_rejected(self, bridge_config, tmp_path):
        audio = audio_file(tmp_path, "bad.mp3")

        async with running_server(bridge_config, CopyingNormalizer(fail=True)) as (server, host):
            result = await server.submit(str(audio))

            assert result["accepted"] is False
            assert result["reason"].startswith("Preprocessing failed:")
            assert server.get_pending_count() == 0
            assert host.events("processing-error")[0]["name"] == "bad.mp3"

    @pytest.mark.asyncio
    async def test_duplicate_submission_rejected(self, bridge_config, tmp_path, monkeypatch):
        monkeypatch.setenv("FAKE_DAEMON_MODE", "silent")
        audio = audio_file(tmp_path, "dup.wav")

        async with running_server(bridge_config) as (server, host):
            first = await server.submit(str(audio))
            second = await server.submit(str(audio))

            assert first["accepted"] is True
            assert second["accepted"] is False
            assert "Already processing" in second["reason"]
            assert server.get_pending_count() == 1

    @pytest.mark.asyncio
    async def test_same_base_name_in_other_directory_rejected(self, bridge_config, tmp_path, monkeypatch):
        monkeypatch.setenv("FAKE_DAEMON_MODE", "silent")
        (tmp_path / "one").mkdir()
        (tmp_path / "two").mkdir()
        first_audio = audio_file(tmp_path / "one", "track.wav")
        second_audio = audio_file(tmp_path / "two", "track.wav")

        async with running_server(bridge_config) as (server, host):
            assert (await server.submit(str(first_audio)))["accepted"] is True
            result = await server.submit(str(second_audio))

            assert result["accepted"] is False
            assert "already pending" in result["reason"]

    @pytest.mark.asyncio
    async def test_duplicate_success_lines_complete_once(self, bridge_config, tmp_path, monkeypatch):
        monkeypatch.setenv("FAKE_DAEMON_MODE", "duplicate_success")
        audio = audio_file(tmp_path, "twice.wav")

        async with running_server(bridge_config) as (server, host):
            await server.submit(str(audio))
            await wait_for(lambda: server.correlator.stats["duplicates"] == 1)

            assert len(host.events("processing-complete")) == 1
            assert host.events("unmatched-output") == []

    @pytest.mark.asyncio
    async def test_daemon_failure_line_reported(self, bridge_config, tmp_path, monkeypatch):
        monkeypatch.setenv("FAKE_DAEMON_MODE", "fail")
        audio = audio_file(tmp_path, "broken.wav")

        async with running_server(bridge_config) as (server, host):
            await server.submit(str(audio), request_id=9)
            await wait_for(lambda: host.events("processing-error"))

            error = host.events("processing-error")[0]
            assert error["name"] == "broken.wav"
            assert error["requestId"] == 9
            assert error["diagnostic"].startswith("Error processing")
            assert server.get_pending_count() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path,reason", [
        ("", "No audio path provided"),
        ("/definitely/missing.wav", "File not found"),
    ])
    async def test_invalid_paths_rejected_without_daemon(self, bridge_config, path, reason):
        async with running_server(bridge_config, start=False) as (server, host):
            result = await server.submit(path)

            assert result["accepted"] is False
            assert reason in result["reason"]
            assert not server.supervisor.is_running

    @pytest.mark.asyncio
    async def test_auto_start_on_submit(self, bridge_config, tmp_path):
        audio = audio_file(tmp_path, "late.wav")

        async with running_server(bridge_config, start=False) as (server, host):
            result = await server.submit(str(audio))

            assert result["accepted"] is True
            assert server.supervisor.is_ready

    @pytest.mark.asyncio
    async def test_no_auto_start_rejects(self, bridge_config, tmp_path):
        bridge_config.auto_start = False
        audio = audio_file(tmp_path, "late.wav")

        async with running_server(bridge_config, start=False) as (server, host):
            result = await server.submit(str(audio))

            assert result["accepted"] is False
            assert result["reason"] == "Daemon not ready after initialization. Please try again."


class TestDaemonExit:
    """Test pending requests when the daemon dies"""

    @pytest.mark.asyncio
    async def test_unexpected_exit_clears_pending(self, bridge_config, tmp_path, monkeypatch):
        """GIVEN two pending requests
        WHEN the daemon dies
        THEN one daemon-exited event is sent and nothing is pending"""
        monkeypatch.setenv("FAKE_DAEMON_MODE", "silent")
        first = audio_file(tmp_path, "one.wav")
        second = audio_file(tmp_path, "two.mp3")

        async with running_server(bridge_config) as (server, host):
            await server.submit(str(first))
            await server.submit(str(second))
            assert server.get_pending_count() == 2

            server.supervisor._process.kill()
            await wait_for(lambda: host.events("daemon-exited"))

            assert len(host.events("daemon-exited")) == 1
            assert server.get_pending_count() == 0
            assert server.supervisor.state is DaemonState.STOPPED
            assert not (tmp_path / "two.proc.wav").exists()

    @pytest.mark.asyncio
    async def test_shutdown_order(self, bridge_config):
        async with running_server(bridge_config) as (server, host):
            await server.supervisor.wait_until_ready(10.0)
            await server.shutdown()

            assert not server.supervisor.is_running
            assert not server.reaper.running
            assert host.event_types()[-1] == "shutdown-complete"
            assert "daemon-exited" not in host.event_types()


class TestParameters:
    """Test set_parameters through the running daemon"""

    @pytest.mark.asyncio
    async def test_parameters_restart_daemon_with_flags(self, bridge_config, tmp_path, monkeypatch):
        args_file = tmp_path / "args.json"
        monkeypatch.setenv("FAKE_DAEMON_ARGS_FILE", str(args_file))

        async with running_server(bridge_config) as (server, host):
            await server.supervisor.wait_until_ready(10.0)

            result = await server.set_parameters(["onset-threshold", "0.8", "use-melodia-trick", "0"])
            assert await server.supervisor.wait_until_ready(10.0)

            assert result == {"applied": True, "flags": ["--onset-threshold", "0.8", "--no-melodia-trick"]}
            assert json.loads(args_file.read_text())[-3:] == [
                "--onset-threshold", "0.8", "--no-melodia-trick",
            ]
            types = host.event_types()
            assert types.index("daemon-restarting") < types.index("parameters-applied")
            assert server.get_status()["flags"] == ["--onset-threshold", "0.8", "--no-melodia-trick"]

    @pytest.mark.asyncio
    async def test_invalid_parameters_leave_daemon_alone(self, bridge_config):
        async with running_server(bridge_config) as (server, host):
            await server.supervisor.wait_until_ready(10.0)
            pid = server.supervisor.pid

            result = await server.set_parameters(["onset-threshold", "5"])

            assert result["applied"] is False
            assert server.supervisor.pid == pid
            message = host.events("parameters-error")[0]["message"]
            assert message.startswith("Parameter validation failed: ")
            assert "daemon-restarting" not in host.event_types()

    @pytest.mark.asyncio
    async def test_empty_parameters_do_not_restart(self, bridge_config):
        async with running_server(bridge_config) as (server, host):
            await server.supervisor.wait_until_ready(10.0)
            pid = server.supervisor.pid

            result = await server.set_parameters([])

            assert result["applied"] is False
            assert server.supervisor.pid == pid


class TestMessageDispatch:
    """Test host message routing"""

    @pytest.mark.asyncio
    async def test_ping(self, bridge_config):
        async with running_server(bridge_config, start=False) as (server, host):
            await server.handle_message({"type": "ping", "id": "p1"})

            assert host.replies()[0]["type"] == "pong"
            assert host.replies()[0]["id"] == "p1"

    @pytest.mark.asyncio
    async def test_status_and_pending(self, bridge_config):
        async with running_server(bridge_config, start=False) as (server, host):
            await server.handle_message({"type": "request", "id": 1, "method": "get_status"})
            await server.handle_message({"type": "request", "id": 2, "method": "get_pending_count"})

            status, pending = host.replies()
            assert status["result"]["status"] == "not ready"
            assert status["result"]["state"] == "stopped"
            assert status["result"]["process"] is None
            assert status["result"]["stats"]["daemon"]["starts"] == 0
            assert status["result"]["stats"]["correlation"]["completed"] == 0
            assert status["result"]["stats"]["ipc"]["messages_sent"] == 0
            assert pending["result"] == {"pending": 0}

    @pytest.mark.asyncio
    async def test_describe_and_check_normalizer(self, bridge_config):
        async with running_server(bridge_config, start=False) as (server, host):
            await server.handle_message({"type": "request", "id": 1, "method": "describe_parameters"})
            await server.handle_message({"type": "request", "id": 2, "method": "check_normalizer"})

            described, normalizer = host.replies()
            keys = [entry["key"] for entry in described["result"]["parameters"]]
            assert "onset-threshold" in keys
            assert normalizer["result"] == {"found": True, "path": "/fake/ffmpeg"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message,code", [
        ({"type": "request", "id": 1, "method": "transmogrify"}, "UNKNOWN_METHOD"),
        ({"type": "shout", "id": 1}, "UNKNOWN_TYPE"),
        ({"type": "request", "id": 1, "method": "submit", "params": ["x"]}, "INVALID_PARAMS"),
        ({"type": "request", "id": 1, "method": "set_parameters", "params": {"params": "x"}}, "INVALID_PARAMS"),
    ])
    async def test_errors(self, bridge_config, message, code):
        async with running_server(bridge_config, start=False) as (server, host):
            await server.handle_message(message)

            reply = host.replies()[0]
            assert reply["type"] == "error"
            assert reply["errorCode"] == code

    @pytest.mark.asyncio
    async def test_request_shutdown(self, bridge_config):
        async with running_server(bridge_config, start=False) as (server, host):
            await server.handle_message({"type": "request", "id": 1, "method": "request_shutdown"})

            assert host.replies()[0]["result"] == {"status": "shutting_down"}
            assert server.lifecycle.shutdown_requested
            assert host.event_types()[-1] == "shutdown-complete"
