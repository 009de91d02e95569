"""Bounded process execution with a hard deadline."""

from __future__ import annotations

import logging
import os
import selectors
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Mapping, Sequence

from .errors import RunnerFailure
from .models import ExecutionResult

logger = logging.getLogger("runbox.process")

TIMEOUT_MESSAGE = b"Execution timed out"
LAUNCH_FAILED_EXIT_CODE = 1
READER_JOIN_GRACE_S = 2.0
_CHUNK_SIZE = 64 * 1024
_POLL_INTERVAL_S = 0.1
_POSIX = os.name == "posix"


class _StreamCollector:
    """Drains one pipe on a daemon thread into a bounded buffer.

    Bytes past ``limit`` are read and dropped so the child never blocks on a
    full pipe buffer. On POSIX the pipe is polled, so ``stop()`` ends the
    thread even while a process that left our group still holds the write end.
    """

    def __init__(self, stream: IO[bytes], limit: int, name: str) -> None:
        self._stream = stream
        self._limit = limit
        self._chunks: list[bytes] = []
        self._size = 0
        self._lock = threading.Lock()
        self.truncated = False
        self.error: BaseException | None = None
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._drain, name=f"runbox-{name}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def _drain(self) -> None:
        try:
            if _POSIX:
                self._drain_polling()
            else:
                while True:
                    chunk = self._stream.read1(_CHUNK_SIZE)
                    if not chunk:
                        break
                    self._append(chunk)
        except (OSError, ValueError) as exc:
            self.error = exc
        finally:
            try:
                self._stream.close()
            except OSError:
                pass

    def _drain_polling(self) -> None:
        fd = self._stream.fileno()
        with selectors.DefaultSelector() as selector:
            selector.register(fd, selectors.EVENT_READ)
            while not self._stop.is_set():
                if not selector.select(_POLL_INTERVAL_S):
                    continue
                chunk = os.read(fd, _CHUNK_SIZE)
                if not chunk:
                    return
                self._append(chunk)

    def _append(self, chunk: bytes) -> None:
        with self._lock:
            room = self._limit - self._size
            if room <= 0:
                self.truncated = True
                return
            if len(chunk) > room:
                chunk = chunk[:room]
                self.truncated = True
            self._chunks.append(chunk)
            self._size += len(chunk)

    def join(self, timeout: float) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def value(self) -> bytes:
        with self._lock:
            return b"".join(self._chunks)


class ProcessRunner:
    def __init__(self, max_output_bytes: int = 1024 * 1024, join_grace_s: float = READER_JOIN_GRACE_S) -> None:
        self.max_output_bytes = max_output_bytes
        self.join_grace_s = join_grace_s

    def run(
        self,
        command: str,
        args: Sequence[str],
        working_directory: Path,
        timeout: float,
        env: Mapping[str, str] | None = None,
    ) -> ExecutionResult:
        start = time.monotonic()
        try:
            process = subprocess.Popen(
                [command, *args],
                cwd=str(working_directory),
                env=dict(env) if env is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=_POSIX,
                close_fds=True,
            )
        except (OSError, ValueError) as exc:
            logger.info("無法啟動 %s：%s", command, exc)
            return ExecutionResult(
                stdout=b"",
                stderr=str(exc).encode("utf-8", errors="replace"),
                exit_code=LAUNCH_FAILED_EXIT_CODE,
                timed_out=False,
                duration_ms=_elapsed_ms(start),
            )

        stdout = _StreamCollector(process.stdout, self.max_output_bytes, f"stdout-{process.pid}")  # type: ignore[arg-type]
        stderr = _StreamCollector(process.stderr, self.max_output_bytes, f"stderr-{process.pid}")  # type: ignore[arg-type]
        timed_out = False
        try:
            stdout.start()
            stderr.start()
            try:
                exit_code: int | None = process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                exit_code = None
        finally:
            # Also covers a leader that exited while its descendants keep the pipes open.
            _kill_process_group(process)
            process.wait()

        drained = _join_all((stdout, stderr), self.join_grace_s)
        if not drained:
            # A descendant outside our process group still holds the write ends.
            logger.warning("process %s 的輸出管線未在 %.1fs 內關閉，停止讀取", process.pid, self.join_grace_s)
            stdout.stop()
            stderr.stop()
            _join_all((stdout, stderr), self.join_grace_s)
        duration_ms = _elapsed_ms(start)

        if timed_out:
            logger.info("process %s 逾時（%.2fs），已強制終止", process.pid, timeout)
            return ExecutionResult(
                stdout=b"",
                stderr=TIMEOUT_MESSAGE,
                exit_code=None,
                timed_out=True,
                duration_ms=duration_ms,
            )

        failure = stdout.error or stderr.error
        if failure is not None:
            raise RunnerFailure(f"讀取 process 輸出失敗：{failure}") from failure
        if exit_code is not None and exit_code < 0:
            # Killed by a signal: there is no normal exit status to report.
            logger.info("process %s 被 signal %s 終止", process.pid, -exit_code)
            exit_code = None

        return ExecutionResult(
            stdout=stdout.value(),
            stderr=stderr.value(),
            exit_code=exit_code,
            timed_out=False,
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
            duration_ms=duration_ms,
        )


def _kill_process_group(process: subprocess.Popen[bytes]) -> None:
    if _POSIX:
        try:
            os.killpg(process.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
        except PermissionError:
            logger.warning("無法終止 process group %s，改為只終止主程序", process.pid)
    if process.poll() is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


def _join_all(collectors: Sequence[_StreamCollector], timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    for collector in collectors:
        collector.join(max(0.0, deadline - time.monotonic()))
    return all(collector.join(0) for collector in collectors)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
