"""Unit tests for recorded event replay."""

import asyncio
import logging
from unittest.mock import MagicMock

import pytest

from rtsp_bridge.streams.config import StreamConfig
from rtsp_bridge.streams.event import EventRecording, EventSessionEngine, event_replay_args, ordinal_prefix
from rtsp_bridge.streams.state import StreamStatus, StreamType
from tests.infrastructure.mocks.ffmpeg_mocks import MockProcessFactory, wait_until

PUBLISH_URL = "rtsp://localhost:8554/cam1_event"
RECORDING_URL = "https://download.example.com/recording/123.mp4"


def make_engine(recording, processes=None, on_status=None, hevc_enabled=False):
    return EventSessionEngine(
        "cam1",
        lambda: recording,
        on_status or MagicMock(),
        StreamConfig(stop_timeout=0.2),
        hevc_enabled=hevc_enabled,
        process_factory=processes or MockProcessFactory(),
    )


class TestOrdinals:
    @pytest.mark.parametrize("number, expected", [
        (1, ""),
        (2, "2nd "),
        (3, "3rd "),
        (4, "4th "),
        (5, "5th "),
    ])
    def test_ordinal_prefix(self, number, expected):
        assert ordinal_prefix(number) == expected


class TestEventRecording:
    def test_from_selection(self):
        recording = EventRecording.from_selection("Motion 2", RECORDING_URL)

        assert recording.event_type == "motion"
        assert recording.index == 2
        assert recording.description == "2nd most recent motion event"

    def test_from_selection_normalizes_type(self):
        recording = EventRecording.from_selection("On-Demand 1", RECORDING_URL, transcoded=True)

        assert recording.event_type == "on_demand"
        assert recording.index == 1
        assert recording.transcoded

    @pytest.mark.parametrize("url", [
        "Recording Not Found",
        "Transcoding in Progress",
        "",
    ])
    def test_unavailable_recordings(self, url):
        assert not EventRecording("motion", 1, url).available

    def test_available_recording(self):
        assert EventRecording("ding", 1, RECORDING_URL).available


class TestReplayArgs:
    def test_copy_profile(self):
        argv = event_replay_args(EventRecording("motion", 1, RECORDING_URL), PUBLISH_URL, reencode=False).to_argv()

        assert argv[2:5] == ["-re", "-i", RECORDING_URL]
        assert argv[argv.index("-c:v") + 1] == "copy"
        assert "libx264" not in argv
        assert argv.count("0:a") == 2
        assert argv[argv.index("-c:a:1") + 1] == "libopus"
        assert argv[-1] == PUBLISH_URL

    def test_reencode_profile(self):
        argv = event_replay_args(EventRecording("motion", 1, RECORDING_URL), PUBLISH_URL, reencode=True).to_argv()

        index = argv.index("-c:v")
        assert argv[index:index + 10] == [
            "-c:v", "libx264", "-g", "20", "-keyint_min", "10", "-crf", "23", "-preset", "ultrafast",
        ]


class TestEventSessionEngine:
    @pytest.mark.asyncio
    async def test_unavailable_recording_fails_without_spawning(self, caplog):
        processes = MockProcessFactory()
        on_status = MagicMock()
        engine = make_engine(EventRecording("motion", 2, "Recording Not Found"), processes, on_status)

        with caplog.at_level(logging.WARNING, logger="rtsp_bridge"):
            await engine.start(PUBLISH_URL)

        assert engine.status is StreamStatus.FAILED
        assert processes.processes == []
        on_status.assert_called_once()
        assert "No recording available for the 2nd most recent motion event!" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_recording_fails(self):
        engine = make_engine(None)

        await engine.start(PUBLISH_URL)

        assert engine.status is StreamStatus.FAILED

    @pytest.mark.asyncio
    async def test_start_reports_active(self):
        processes = MockProcessFactory()
        on_status = MagicMock()
        engine = make_engine(EventRecording("motion", 1, RECORDING_URL), processes, on_status)

        await engine.start(PUBLISH_URL)

        assert engine.status is StreamStatus.ACTIVE
        assert engine.session.type is StreamType.EVENT
        assert processes.calls[0]["stdin"] == asyncio.subprocess.DEVNULL
        argv = processes.processes[0].argv
        assert argv[argv.index("-c:v") + 1] == "copy"
        on_status.assert_called_once()

        await engine.stop()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("transcoded, hevc", [(True, False), (False, True)])
    async def test_reencode_when_transcoded_or_hevc(self, transcoded, hevc):
        processes = MockProcessFactory()
        recording = EventRecording("motion", 1, RECORDING_URL, transcoded=transcoded)
        engine = make_engine(recording, processes, hevc_enabled=lambda: hevc)

        await engine.start(PUBLISH_URL)

        assert "libx264" in processes.processes[0].argv
        await engine.stop()

    @pytest.mark.asyncio
    async def test_process_exit_reports_inactive(self):
        processes = MockProcessFactory()
        on_status = MagicMock()
        engine = make_engine(EventRecording("motion", 1, RECORDING_URL), processes, on_status)
        await engine.start(PUBLISH_URL)

        processes.processes[0].exit(0)

        await wait_until(lambda: engine.status is StreamStatus.INACTIVE)
        assert engine.process is None
        assert engine.session is None
        assert on_status.call_count == 2

    @pytest.mark.asyncio
    async def test_stop_terminates_process(self):
        processes = MockProcessFactory()
        on_status = MagicMock()
        engine = make_engine(EventRecording("motion", 1, RECORDING_URL), processes, on_status)
        await engine.start(PUBLISH_URL)

        await engine.stop()

        assert engine.status is StreamStatus.INACTIVE
        assert processes.running == []
        assert processes.processes[0].terminate_calls == 1
        assert on_status.call_count == 2

        await engine.stop()
        assert on_status.call_count == 2

    @pytest.mark.asyncio
    async def test_stale_exit_is_ignored(self):
        processes = MockProcessFactory()
        engine = make_engine(EventRecording("motion", 1, RECORDING_URL), processes)
        await engine.start(PUBLISH_URL)
        first = engine.process
        await engine.stop()
        await engine.start(PUBLISH_URL)

        await engine._on_exit(first)

        assert engine.status is StreamStatus.ACTIVE
        assert engine.process is not first
        await engine.stop()

    @pytest.mark.asyncio
    async def test_spawn_failure_reports_failed(self):
        engine = make_engine(
            EventRecording("motion", 1, RECORDING_URL),
            MockProcessFactory(fail_when=lambda argv: True),
        )

        await engine.start(PUBLISH_URL)

        assert engine.status is StreamStatus.FAILED
        assert engine.process is None

    @pytest.mark.asyncio
    async def test_stop_while_spawning_kills_new_process(self):
        processes = MockProcessFactory()
        release = asyncio.Event()

        async def slow_spawn(*argv, **kwargs):
            await release.wait()
            return await processes(*argv, **kwargs)

        on_status = MagicMock()
        engine = make_engine(EventRecording("motion", 1, RECORDING_URL), slow_spawn, on_status)

        starting = asyncio.ensure_future(engine.start(PUBLISH_URL))
        await wait_until(lambda: engine.status is StreamStatus.STARTING)
        await engine.stop()
        assert engine.status is StreamStatus.INACTIVE

        release.set()
        await starting

        assert engine.status is StreamStatus.INACTIVE
        assert engine.process is None
        assert engine.session is None
        assert len(processes.processes) == 1
        assert processes.running == []
        assert on_status.call_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_spawn_once(self):
        processes = MockProcessFactory()
        release = asyncio.Event()

        async def slow_spawn(*argv, **kwargs):
            await release.wait()
            return await processes(*argv, **kwargs)

        engine = make_engine(EventRecording("motion", 1, RECORDING_URL), slow_spawn)

        first = asyncio.ensure_future(engine.start(PUBLISH_URL))
        await wait_until(lambda: engine.status is StreamStatus.STARTING)
        await engine.start(PUBLISH_URL)
        release.set()
        await first

        assert len(processes.processes) == 1
        assert engine.status is StreamStatus.ACTIVE

        await engine.stop()
        assert processes.running == []
