"""Unit tests for the snapshot stream engine and its live overlay."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from rtsp_bridge.streams.config import StreamConfig
from rtsp_bridge.streams.protocol import AltMediaDescriptor
from rtsp_bridge.streams.snapshot import SnapshotSessionEngine, overlay_args, snapshot_publisher_args
from rtsp_bridge.streams.state import StreamStatus, StreamType
from tests.infrastructure.mocks.ffmpeg_mocks import MockProcessFactory, wait_until

PUBLISH_URL = "rtsp://localhost:8554/cam1_snapshot"
STILL = b"\xff\xd8still-image\xff\xd9"
DESCRIPTOR = AltMediaDescriptor(port=51000, session_description="v=0\r\nm=video 51000 RTP/AVP 96\r\n")


class FakeCamera:
    """Device side of the engine: current snapshot and refresh requests."""

    def __init__(self, image=STILL):
        self.image = image
        self.refreshes = 0

    def snapshot(self):
        return self.image

    def refresh(self):
        self.refreshes += 1


def fast_config(**overrides) -> StreamConfig:
    values = dict(
        snapshot_interval_ms=5,
        stop_timeout=0.2,
        alt_media_wait=0.1,
        alt_media_poll=0.01,
        overlay_lead_time=0.0,
    )
    values.update(overrides)
    return StreamConfig(**values)


def make_engine(camera=None, processes=None, live=None, on_status=None, **config):
    camera = camera or FakeCamera()
    return SnapshotSessionEngine(
        "cam1",
        camera.snapshot,
        on_status or MagicMock(),
        fast_config(**config),
        live=live,
        refresh_snapshot=camera.refresh,
        process_factory=processes or MockProcessFactory(),
    )


def make_live(descriptor=DESCRIPTOR) -> MagicMock:
    live = MagicMock()
    live.alt_media = descriptor
    live.release_alt_media_ports = AsyncMock()
    return live


def publisher_of(processes):
    return processes.find(PUBLISH_URL)[0]


def encoder_of(processes):
    return [p for p in processes.find("image2pipe") if "sdp" not in p.argv][0]


class TestArgs:
    """Test the stage command lines."""

    def test_publisher_reads_mpegts_and_publishes_rtsp(self):
        argv = snapshot_publisher_args(PUBLISH_URL).to_argv()

        assert argv[argv.index("-i") - 6:argv.index("-i")] == [
            "-f", "mpegts", "-probesize", "32k", "-analyzeduration", "0",
        ]
        assert argv[-3:] == ["-rtsp_transport", "tcp", PUBLISH_URL]

    def test_overlay_modes(self):
        video = overlay_args((1280, 720), "video").to_argv()
        frames = overlay_args((1280, 720), "frames").to_argv()

        assert "sdp" in video and "sdp" in frames
        assert video[-3:] == ["-f", "mpegts", "pipe:1"]
        assert frames[-3:] == ["-f", "image2pipe", "pipe:1"]
        assert "mjpeg" in frames


class TestStart:
    """Test engine start."""

    @pytest.mark.asyncio
    async def test_no_image_fails_without_spawning(self):
        processes = MockProcessFactory()
        on_status = MagicMock()
        engine = make_engine(FakeCamera(image=None), processes, on_status=on_status)

        await engine.start(PUBLISH_URL)

        assert engine.status is StreamStatus.FAILED
        assert processes.processes == []
        on_status.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_spawns_both_stages(self):
        processes = MockProcessFactory()
        on_status = MagicMock()
        engine = make_engine(processes=processes, on_status=on_status)

        await engine.start(PUBLISH_URL)

        assert engine.status is StreamStatus.ACTIVE
        assert len(processes.processes) == 2
        encoder = encoder_of(processes)
        assert "scale=1280:720:force_original_aspect_ratio=decrease,pad=1280:720:(ow-iw)/2:(oh-ih)/2" in encoder.argv
        assert engine.session.type is StreamType.SNAPSHOT
        assert len(engine.handles) == 2
        on_status.assert_called_once()

        await engine.stop()

    @pytest.mark.asyncio
    async def test_feeder_writes_current_image(self):
        processes = MockProcessFactory()
        engine = make_engine(processes=processes)
        await engine.start(PUBLISH_URL)
        encoder = encoder_of(processes)

        await wait_until(lambda: len(encoder.stdin.writes) >= 3)

        assert set(encoder.stdin.writes) == {STILL}
        await engine.stop()

    @pytest.mark.asyncio
    async def test_encoder_output_reaches_publisher(self):
        processes = MockProcessFactory()
        engine = make_engine(processes=processes)
        await engine.start(PUBLISH_URL)

        encoder_of(processes).stdout.feed(b"mpegts-packets")
        publisher = publisher_of(processes)
        await wait_until(lambda: publisher.stdin.data == b"mpegts-packets")

        await engine.stop()

    @pytest.mark.asyncio
    async def test_start_while_active_republishes(self):
        processes = MockProcessFactory()
        on_status = MagicMock()
        engine = make_engine(processes=processes, on_status=on_status)
        await engine.start(PUBLISH_URL)

        await engine.start(PUBLISH_URL)

        assert engine.status is StreamStatus.ACTIVE
        assert len(processes.processes) == 2
        assert on_status.call_count == 2

        await engine.stop()

    @pytest.mark.asyncio
    async def test_spawn_failure_fails_and_cleans_up(self):
        processes = MockProcessFactory(fail_when=lambda argv: "image2pipe" in argv)
        engine = make_engine(processes=processes)

        await engine.start(PUBLISH_URL)

        assert engine.status is StreamStatus.FAILED
        assert processes.running == []
        assert engine.handles == []

    @pytest.mark.asyncio
    async def test_start_while_stopping_fails_without_spawning(self):
        processes = MockProcessFactory(exit_on_stdin_close=lambda argv: PUBLISH_URL not in argv)
        engine = make_engine(processes=processes)
        await engine.start(PUBLISH_URL)

        stopping = asyncio.ensure_future(engine.stop())
        await wait_until(lambda: engine.stopping)
        await engine.start(PUBLISH_URL)

        assert engine.status is StreamStatus.FAILED
        assert len(processes.processes) == 2

        await stopping
        assert processes.running == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage", ["publisher", "encoder"])
    async def test_stop_while_spawning_cleans_up(self, stage):
        processes = MockProcessFactory()
        spawned = []
        release = asyncio.Event()

        async def slow_spawn(*argv, **kwargs):
            is_target = PUBLISH_URL in argv if stage == "publisher" else "image2pipe" in argv
            if is_target:
                spawned.append(argv)
                await release.wait()
            return await processes(*argv, **kwargs)

        on_status = MagicMock()
        engine = make_engine(processes=slow_spawn, on_status=on_status)

        starting = asyncio.ensure_future(engine.start(PUBLISH_URL))
        await wait_until(lambda: spawned)
        await engine.stop()
        release.set()
        await starting

        assert engine.status is StreamStatus.INACTIVE
        assert engine.session is None
        assert engine.handles == []
        assert processes.running == []
        assert on_status.call_count == 1

        await engine.start(PUBLISH_URL)
        assert engine.status is StreamStatus.ACTIVE
        await engine.stop()


class TestStop:
    """Test engine stop."""

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self):
        processes = MockProcessFactory()
        on_status = MagicMock()
        engine = make_engine(processes=processes, on_status=on_status)
        await engine.start(PUBLISH_URL)

        await engine.stop()

        assert engine.status is StreamStatus.INACTIVE
        assert processes.running == []
        assert engine.handles == []
        assert engine.session is None
        assert on_status.call_count == 2

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        on_status = MagicMock()
        engine = make_engine(on_status=on_status)

        await engine.stop()
        on_status.assert_not_called()

        await engine.start(PUBLISH_URL)
        await engine.stop()
        await engine.stop()
        assert on_status.call_count == 2

    @pytest.mark.asyncio
    async def test_stop_within_timeout_budget(self):
        processes = MockProcessFactory(exit_on_stdin_close=lambda argv: False)
        engine = make_engine(processes=processes, stop_timeout=0.1)
        await engine.start(PUBLISH_URL)

        loop = asyncio.get_running_loop()
        started = loop.time()
        await engine.stop()

        assert loop.time() - started < 0.1 + 0.5
        assert processes.running == []

    @pytest.mark.asyncio
    async def test_write_failure_stops_engine(self):
        processes = MockProcessFactory()
        engine = make_engine(processes=processes)
        await engine.start(PUBLISH_URL)
        encoder = encoder_of(processes)
        await wait_until(lambda: len(encoder.stdin.writes) >= 1)

        encoder.stdin.fail_writes = True
        await wait_until(lambda: engine.status is StreamStatus.INACTIVE)
        written = engine.images_written
        await asyncio.sleep(0.03)

        assert engine.images_written == written
        assert processes.running == []

    @pytest.mark.asyncio
    async def test_publisher_exit_stops_engine(self):
        processes = MockProcessFactory()
        engine = make_engine(processes=processes)
        await engine.start(PUBLISH_URL)

        publisher_of(processes).exit(1)

        await wait_until(lambda: engine.status is StreamStatus.INACTIVE and not engine.stopping)
        assert processes.running == []

    @pytest.mark.asyncio
    async def test_image_provider_error_stops_engine(self):
        processes = MockProcessFactory()
        camera = FakeCamera()
        engine = make_engine(camera, processes)
        await engine.start(PUBLISH_URL)
        encoder = encoder_of(processes)
        await wait_until(lambda: len(encoder.stdin.writes) >= 1)

        def broken():
            raise RuntimeError("snapshot cache unavailable")

        engine._image_provider = broken
        await wait_until(lambda: engine.status is StreamStatus.INACTIVE and not engine.stopping)

        assert processes.running == []
        assert engine.session is None


class TestOverlay:
    """Test the live overlay splice."""

    @pytest.mark.asyncio
    async def test_overlay_requires_active_stream(self):
        engine = make_engine(live=make_live())

        assert await engine.start_overlay(5) is False
        assert not engine.overlay_active

    @pytest.mark.asyncio
    async def test_alt_media_timeout_aborts_overlay(self):
        processes = MockProcessFactory()
        live = make_live(descriptor=None)
        engine = make_engine(processes=processes, live=live)
        await engine.start(PUBLISH_URL)
        encoder = encoder_of(processes)

        assert await engine.start_overlay(5) is False

        assert not engine.overlay_active
        assert engine.status is StreamStatus.ACTIVE
        keepalive = processes.find("cam1_live")[0]
        assert keepalive.returncode is not None
        assert processes.find("sdp") == []
        live.release_alt_media_ports.assert_not_called()

        before = len(encoder.stdin.writes)
        await wait_until(lambda: len(encoder.stdin.writes) > before)
        assert publisher_of(processes).returncode is None

        await engine.stop()

    @pytest.mark.asyncio
    async def test_video_overlay_splices_and_reverts(self):
        processes = MockProcessFactory()
        camera = FakeCamera()
        live = make_live()
        engine = make_engine(camera, processes, live=live)
        await engine.start(PUBLISH_URL)
        encoder = encoder_of(processes)
        publisher = publisher_of(processes)
        encoder.stdout.feed(b"still|")
        await wait_until(lambda: publisher.stdin.data == b"still|")

        overlay_task = asyncio.ensure_future(engine.start_overlay(30))
        await wait_until(lambda: processes.find("sdp"))
        overlay = processes.find("sdp")[0]
        await wait_until(lambda: overlay.stdin.is_closing())

        assert engine.overlay_active
        assert overlay.stdin.data == DESCRIPTOR.session_description.encode()
        live.release_alt_media_ports.assert_called_once()
        assert processes.find("rtsp://localhost:8554/cam1_live")

        overlay.stdout.feed(b"live|")
        await wait_until(lambda: publisher.stdin.data == b"still|live|")
        encoder.stdout.feed(b"hidden|")
        await asyncio.sleep(0.02)
        assert publisher.stdin.data == b"still|live|"

        overlay.exit(0)
        assert await overlay_task is True

        assert not engine.overlay_active
        assert camera.refreshes == 1
        assert processes.find("cam1_live")[0].returncode is not None

        encoder.stdout.feed(b"back|")
        await wait_until(lambda: publisher.stdin.data.endswith(b"back|"))

        await engine.stop()

    @pytest.mark.asyncio
    async def test_frames_overlay_replaces_images(self):
        processes = MockProcessFactory()
        camera = FakeCamera()
        engine = make_engine(camera, processes, live=make_live(), overlay_mode="frames")
        await engine.start(PUBLISH_URL)
        encoder = encoder_of(processes)

        overlay_task = asyncio.ensure_future(engine.start_overlay(30))
        await wait_until(lambda: processes.find("sdp"))
        overlay = processes.find("sdp")[0]

        frame = b"\xff\xd8live-frame\xff\xd9"
        overlay.stdout.feed(b"junk" + frame[:5])
        overlay.stdout.feed(frame[5:])
        await wait_until(lambda: encoder.stdin.writes[-1] == frame)

        overlay.exit(0)
        assert await overlay_task is True
        assert camera.refreshes == 0

        # The captured frame stays until the device has a newer snapshot
        count = len(encoder.stdin.writes)
        await wait_until(lambda: len(encoder.stdin.writes) > count + 2)
        assert encoder.stdin.writes[-1] == frame

        camera.image = b"\xff\xd8newer\xff\xd9"
        await wait_until(lambda: encoder.stdin.writes[-1] == camera.image)

        await engine.stop()

    @pytest.mark.asyncio
    async def test_overlay_is_not_reentrant(self):
        processes = MockProcessFactory()
        engine = make_engine(processes=processes, live=make_live())
        await engine.start(PUBLISH_URL)

        overlay_task = asyncio.ensure_future(engine.start_overlay(30))
        await wait_until(lambda: engine.overlay_active)

        assert await engine.start_overlay(30) is False
        assert len(processes.find("cam1_live")) == 1

        await engine.stop()
        await overlay_task

    @pytest.mark.asyncio
    async def test_stop_ends_overlay(self):
        processes = MockProcessFactory()
        engine = make_engine(processes=processes, live=make_live())
        await engine.start(PUBLISH_URL)

        overlay_task = asyncio.ensure_future(engine.start_overlay(30))
        await wait_until(lambda: processes.find("sdp"))

        await engine.stop()

        assert overlay_task.done()
        assert not engine.overlay_active
        assert processes.running == []
        assert engine.status is StreamStatus.INACTIVE
