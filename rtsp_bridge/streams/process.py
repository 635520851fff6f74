"""
ffmpeg process plumbing shared by every stream engine.

A ProcessHandle owns one child process and its pipes. PipeRelay chains the
stdout of one or more upstream handles into a single downstream stdin, with
the upstream replaceable while both sides keep running. stop_process is the
graceful-then-forced shutdown used on every exit path.
"""
from __future__ import annotations

import asyncio
import contextlib
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

from rtsp_bridge.core.asyncio_utils import cancel_tasks, create_logged_task
from rtsp_bridge.core.logging_utils import LoggerLike, ensure_structured_logger, get_module_logger

from .defaults import DEFAULT_FFMPEG_PATH, DEFAULT_KILL_WAIT, DEFAULT_STOP_TIMEOUT
from .errors import ProcessSpawnError

logger = get_module_logger("ProcessPipeline")

PIPE_INPUT = "pipe:"
PIPE_OUTPUT = "pipe:1"
RELAY_CHUNK_SIZE = 64 * 1024

ExitCallback = Callable[["ProcessHandle"], Optional[Awaitable[Any]]]
ProcessFactory = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class TranscodeArgs:
    """Structured ffmpeg command line: input options, codec/map directives, output options."""

    input: str = PIPE_INPUT
    input_options: Tuple[str, ...] = ()
    codec_options: Tuple[str, ...] = ()
    output_options: Tuple[str, ...] = ()
    output: str = PIPE_OUTPUT
    hide_banner: bool = True

    def to_argv(self, ffmpeg_path: str = DEFAULT_FFMPEG_PATH) -> list[str]:
        argv = [ffmpeg_path]
        if self.hide_banner:
            argv.append("-hide_banner")
        argv.extend(self.input_options)
        argv.extend(["-i", self.input])
        argv.extend(self.codec_options)
        argv.extend(self.output_options)
        argv.append(self.output)
        return argv


class ProcessHandle:
    """A spawned child process, its pipes, and the tasks watching it."""

    def __init__(
        self,
        name: str,
        process: Any,
        *,
        on_exit: Optional[ExitCallback] = None,
        logger: LoggerLike = None,
    ) -> None:
        self.name = name
        self.process = process
        self.logger = ensure_structured_logger(logger, fallback_name="ProcessPipeline").getChild(name)
        self._on_exit = on_exit
        self._stop_requested = False
        self._released = False
        self._stderr_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"ProcessHandle({self.name!r}, pid={self.pid}, returncode={self.returncode})"

    # ------------------------------------------------------------------ state

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def stdin(self):
        return self.process.stdin

    @property
    def stdout(self):
        return self.process.stdout

    @property
    def released(self) -> bool:
        return self._released

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def is_running(self) -> bool:
        return not self._released and self.process.returncode is None

    # ------------------------------------------------------------------ tasks

    def start_monitoring(self) -> None:
        if self.process.stderr is not None and self._stderr_task is None:
            self._stderr_task = create_logged_task(
                self._stderr_reader(),
                logger=self.logger,
                context=f"{self.name}-stderr",
            )
        if self._monitor_task is None:
            self._monitor_task = create_logged_task(
                self._process_monitor(),
                logger=self.logger,
                context=f"{self.name}-monitor",
            )

    async def _stderr_reader(self) -> None:
        stderr = self.process.stderr
        while True:
            line = await stderr.readline()
            if not line:
                break
            text = line.decode(errors="replace").strip()
            if text:
                self.logger.debug("%s", text)

    async def _process_monitor(self) -> None:
        returncode = await self.process.wait()
        if self._stop_requested:
            self.logger.debug("Exited with %s after stop request", returncode)
            return

        self.logger.info("Exited unexpectedly with %s", returncode)
        if self._on_exit is None:
            return
        # The callback usually stops this handle, which cancels the monitor task
        self._exit_task = create_logged_task(
            self._notify_exit(),
            logger=self.logger,
            context=f"{self.name}-exit",
        )

    async def _notify_exit(self) -> None:
        result = self._on_exit(self)
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------ I/O

    async def write(self, data: bytes) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing() or self._released:
            raise BrokenPipeError(f"{self.name} stdin is closed")
        stdin.write(data)
        await stdin.drain()

    async def close_stdin(self) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            return
        stdin.close()
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            await stdin.wait_closed()

    async def wait(self) -> int:
        return await self.process.wait()

    # ------------------------------------------------------------------ signals

    def request_stop(self) -> None:
        """Mark the coming exit as requested so on_exit does not fire."""
        self._stop_requested = True

    def terminate(self) -> None:
        self._stop_requested = True
        with contextlib.suppress(ProcessLookupError):
            self.process.terminate()

    def kill(self) -> None:
        self._stop_requested = True
        with contextlib.suppress(ProcessLookupError):
            self.process.kill()

    async def release(self) -> None:
        """Drop the watcher tasks; the process itself must already be stopped."""
        self._released = True
        await cancel_tasks([self._stderr_task, self._monitor_task], logger=self.logger)


async def spawn_process(
    args: TranscodeArgs,
    *,
    name: str,
    ffmpeg_path: str = DEFAULT_FFMPEG_PATH,
    stdin: bool = True,
    stdout: bool = True,
    on_exit: Optional[ExitCallback] = None,
    logger: LoggerLike = None,
    create: Optional[ProcessFactory] = None,
) -> ProcessHandle:
    """Start ffmpeg with ``args`` and return a monitored handle.

    Raises:
        ProcessSpawnError: the program could not be started.
    """
    argv = args.to_argv(ffmpeg_path)
    factory = create or asyncio.create_subprocess_exec
    spawn_logger = ensure_structured_logger(logger, fallback_name="ProcessPipeline")
    spawn_logger.debug("Spawning %s: %s", name, " ".join(argv))

    try:
        process = await factory(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE if stdout else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except (OSError, ValueError) as exc:
        raise ProcessSpawnError(f"Failed to spawn {name}: {exc}") from exc

    handle = ProcessHandle(name, process, on_exit=on_exit, logger=spawn_logger)
    handle.start_monitoring()
    spawn_logger.debug("%s started with pid %s", name, handle.pid)
    return handle


async def stop_process(
    handle: Optional[ProcessHandle],
    timeout: float = DEFAULT_STOP_TIMEOUT,
    *,
    kill_wait: float = DEFAULT_KILL_WAIT,
) -> Optional[int]:
    """Graceful-then-forced shutdown of ``handle``.

    Closes stdin (or sends SIGTERM when there is no open stdin pipe), then races the
    process exit against ``timeout``. On timeout the process gets SIGKILL.
    The handle is always released before returning.
    """
    if handle is None:
        return None

    handle.request_stop()

    if handle.returncode is None:
        try:
            await asyncio.wait_for(_graceful_exit(handle), timeout=timeout)
        except asyncio.TimeoutError:
            handle.logger.warning("Did not exit within %.1fs, sending SIGKILL", timeout)
            handle.kill()
            try:
                await asyncio.wait_for(handle.wait(), timeout=kill_wait)
            except asyncio.TimeoutError:
                handle.logger.error("Still running after SIGKILL")

    await handle.release()
    return handle.returncode


async def _graceful_exit(handle: ProcessHandle) -> None:
    stdin = handle.stdin
    if stdin is not None and not stdin.is_closing():
        # End of input lets ffmpeg flush and exit on its own
        await handle.close_stdin()
    else:
        handle.terminate()
    await handle.wait()


async def stop_processes(
    handles: Sequence[Optional[ProcessHandle]],
    timeout: float = DEFAULT_STOP_TIMEOUT,
) -> None:
    await asyncio.gather(*(stop_process(handle, timeout) for handle in handles if handle is not None))


class PipeRelay:
    """Pumps the current upstream's stdout into ``sink``'s stdin.

    Every registered source is read continuously; chunks from a source that is
    not current are dropped so a paused upstream never blocks on a full pipe.
    Switching the current source is a plain reference swap on the event loop.
    """

    def __init__(self, sink: ProcessHandle, *, chunk_size: int = RELAY_CHUNK_SIZE, logger: LoggerLike = None) -> None:
        self.sink = sink
        self.chunk_size = chunk_size
        self.logger = ensure_structured_logger(logger, fallback_name="PipeRelay")
        self._current: Optional[ProcessHandle] = None
        self._pumps: Dict[ProcessHandle, asyncio.Task] = {}
        self._closed = False
        self.bytes_forwarded = 0

    @property
    def current(self) -> Optional[ProcessHandle]:
        return self._current

    @property
    def sources(self) -> list[ProcessHandle]:
        return list(self._pumps)

    def add_source(self, source: ProcessHandle, *, current: bool = False, on_first_output: bool = False) -> None:
        if self._closed:
            raise RuntimeError("PipeRelay is closed")
        if source in self._pumps:
            return
        if source.stdout is None:
            raise ValueError(f"{source.name} has no stdout pipe")
        self._pumps[source] = create_logged_task(
            self._pump(source, on_first_output),
            logger=self.logger,
            context=f"relay-{source.name}-to-{self.sink.name}",
        )
        if current:
            self.switch_to(source)

    def switch_to(self, source: Optional[ProcessHandle]) -> None:
        if source is not None and source not in self._pumps:
            raise ValueError(f"{source.name} is not a source of this relay")
        if source is self._current:
            return
        previous = self._current
        self._current = source
        self.logger.debug(
            "%s upstream switched from %s to %s",
            self.sink.name,
            previous.name if previous else None,
            source.name if source else None,
        )

    async def remove_source(self, source: ProcessHandle) -> None:
        task = self._pumps.pop(source, None)
        if source is self._current:
            self._current = None
        await cancel_tasks([task], logger=self.logger)

    async def close(self) -> None:
        self._closed = True
        self._current = None
        tasks = list(self._pumps.values())
        self._pumps.clear()
        await cancel_tasks(tasks, logger=self.logger)

    async def _pump(self, source: ProcessHandle, on_first_output: bool) -> None:
        first = True
        while True:
            chunk = await source.stdout.read(self.chunk_size)
            if not chunk:
                self.logger.debug("%s output ended", source.name)
                break
            if first:
                first = False
                if on_first_output:
                    self.switch_to(source)
            if source is not self._current:
                continue
            try:
                await self.sink.write(chunk)
            except (BrokenPipeError, ConnectionResetError) as exc:
                self.logger.debug("%s input closed (%s), relay from %s stopped", self.sink.name, exc, source.name)
                break
            self.bytes_forwarded += len(chunk)


__all__ = [
    "PIPE_INPUT",
    "PIPE_OUTPUT",
    "PipeRelay",
    "ProcessHandle",
    "TranscodeArgs",
    "spawn_process",
    "stop_process",
    "stop_processes",
]
