from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

from voleveler.common.env import Env
from voleveler.common.ffmpeg import has_fatal_signal, summarize_failure_log
from voleveler.common.logging_setup import get_logger, safe_path_basename
from voleveler.common.paths import engine_workdir


log = get_logger("engine")


class EngineError(RuntimeError):
    """An engine invocation finished with a non-zero status."""

    def __init__(self, context: str, *, exit_code: int, summary: str, log_text: str = "") -> None:
        exit_text = f" (exit {exit_code})" if exit_code != 0 else ""
        super().__init__(f"{context} failed{exit_text}{': ' + summary if summary else ''}")
        self.context = context
        self.exit_code = exit_code
        self.summary = summary
        self.log_text = log_text


class EngineFatalError(EngineError):
    """The engine reported a memory/runtime fault; the instance must not be reused."""


class EngineInitError(RuntimeError):
    pass


class Engine(Protocol):
    async def exec(self, args: List[str]) -> Tuple[int, str]: ...

    def write_file(self, name: str, data: bytes) -> None: ...

    def read_file(self, name: str) -> bytes: ...

    def delete_file(self, name: str) -> None: ...

    def terminate(self) -> None: ...


EngineFactory = Callable[[int], Awaitable[Engine]]


class LogBuffer:
    """Rolling engine log. Oldest lines are dropped once max_lines is exceeded."""

    def __init__(self, *, max_lines: int = 2000, keep_lines: int = 1200) -> None:
        self._max = max(1, int(max_lines))
        self._keep = max(1, min(int(keep_lines), self._max))
        self._lines: List[str] = []

    def push(self, line: str) -> None:
        if line.strip() == "Aborted()":
            # emitted on teardown, not a failure signal
            return
        self._lines.append(line)
        if len(self._lines) > self._max:
            self._lines = self._lines[-self._keep:]

    def extend(self, text: str) -> None:
        for line in (text or "").splitlines():
            self.push(line)

    def snapshot(self) -> str:
        return "\n".join(self._lines)

    def reset(self) -> str:
        snap = self.snapshot()
        self._lines = []
        return snap

    def __len__(self) -> int:
        return len(self._lines)


class FfmpegEngine:
    """ffmpeg CLI bound to a private working directory.

    The working directory plays the role of the engine's virtual file system:
    inputs are written into it, outputs are read back from it, and tearing the
    instance down discards it wholesale.
    """

    def __init__(self, *, workdir: Path, ffmpeg_bin: str = "ffmpeg", timeout_sec: Optional[int] = None) -> None:
        self.workdir = workdir
        self._bin = ffmpeg_bin
        self._timeout = timeout_sec
        self._proc: Optional[asyncio.subprocess.Process] = None

    def _path(self, name: str) -> Path:
        return self.workdir / safe_path_basename(name, fallback="unnamed")

    async def exec(self, args: List[str]) -> Tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            self._bin,
            *args,
            cwd=str(self.workdir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._proc = proc
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            out, err = await proc.communicate()
            text = (out + err).decode("utf-8", errors="replace")
            return 124, text + "\nerror: render timed out"
        except asyncio.CancelledError:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            raise
        finally:
            self._proc = None
        return int(proc.returncode or 0), (out + err).decode("utf-8", errors="replace")

    def write_file(self, name: str, data: bytes) -> None:
        self._path(name).write_bytes(data)

    def read_file(self, name: str) -> bytes:
        return self._path(name).read_bytes()

    def delete_file(self, name: str) -> None:
        self._path(name).unlink(missing_ok=True)

    def terminate(self) -> None:
        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        shutil.rmtree(self.workdir, ignore_errors=True)


def ffmpeg_engine_factory(env: Env, batch_id: str) -> EngineFactory:
    async def _start(generation: int) -> Engine:
        workdir = engine_workdir(env, batch_id, generation)
        workdir.mkdir(parents=True, exist_ok=True)
        engine = FfmpegEngine(workdir=workdir, ffmpeg_bin=env.ffmpeg_bin, timeout_sec=env.exec_timeout_sec)
        try:
            code, text = await engine.exec(["-hide_banner", "-version"])
        except OSError as e:
            engine.terminate()
            raise EngineInitError(f"ffmpeg not runnable ({env.ffmpeg_bin}): {e}") from e
        if code != 0:
            engine.terminate()
            raise EngineInitError(f"ffmpeg -version failed: {summarize_failure_log(text)}")
        return engine

    return _start


class EngineHandle:
    """Exclusive owner of one engine instance and its rolling log.

    The instance is created lazily on first use. A fatal fault flags the
    handle so the next acquire() tears the poisoned instance down and starts a
    fresh one; refresh() does the same eagerly (fault recovery and periodic
    recycling both go through it).
    """

    def __init__(self, factory: EngineFactory, *, log_buffer: Optional[LogBuffer] = None) -> None:
        self._factory = factory
        self._engine: Optional[Engine] = None
        self._lock = asyncio.Lock()
        self.log_buffer = log_buffer or LogBuffer()
        self.generation = 0
        self.recycle_count = 0
        self.needs_reinit = False

    @property
    def active(self) -> bool:
        return self._engine is not None

    async def acquire(self) -> Engine:
        if self._engine is not None and self.needs_reinit:
            log.warning("engine flagged for reinit; tearing down generation=%s", self.generation)
            self._teardown()
        if self._engine is None:
            self.generation += 1
            self._engine = await self._factory(self.generation)
            self.needs_reinit = False
        return self._engine

    async def refresh(self, reason: str) -> Engine:
        log.info("resetting engine (%s)", reason)
        self.recycle_count += 1
        self._teardown()
        return await self.acquire()

    def release(self) -> None:
        self._teardown()

    def _teardown(self) -> None:
        engine = self._engine
        self._engine = None
        self.log_buffer.reset()
        if engine is None:
            return
        try:
            engine.terminate()
        except OSError as e:
            log.warning("engine terminate failed: %s", e)

    async def exec_checked(self, args: List[str], context: str) -> str:
        """Run one engine invocation; return its log text or raise EngineError."""
        engine = await self.acquire()
        async with self._lock:
            self.log_buffer.reset()
            try:
                code, text = await engine.exec(args)
            except (OSError, RuntimeError) as e:
                code, text = -1, f"{type(e).__name__}: {e}"
            self.log_buffer.extend(text)
            snapshot = self.log_buffer.snapshot()

        if code == 0:
            return snapshot

        summary = summarize_failure_log(snapshot)
        if has_fatal_signal(snapshot):
            self.needs_reinit = True
            raise EngineFatalError(context, exit_code=code, summary=summary, log_text=snapshot)
        raise EngineError(context, exit_code=code, summary=summary, log_text=snapshot)

    async def write_file(self, name: str, data: bytes) -> None:
        engine = await self.acquire()
        engine.write_file(name, data)

    async def read_file(self, name: str) -> bytes:
        engine = await self.acquire()
        return engine.read_file(name)

    async def delete_file(self, name: str) -> None:
        if self._engine is None:
            return
        try:
            self._engine.delete_file(name)
        except OSError:
            # temp artifact may never have been created
            pass
