from __future__ import annotations
import queue
import sys
import threading
from pathlib import Path
from typing import BinaryIO, Iterable, Optional

import structlog

from ..core.errors import LogStreamError

log = structlog.get_logger(__name__)

_EOF = object()


class _ConsoleMirror:
    """
    Best-effort copy of the log to a console stream.
    Fed through a bounded queue; when the console falls behind, chunks are
    dropped for the console only.
    """

    def __init__(self, out: BinaryIO, maxsize: int = 256):
        self.out = out
        self.q: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self._t = threading.Thread(target=self._pump, name="log-mirror", daemon=True)
        self._t.start()

    def _pump(self) -> None:
        while True:
            item = self.q.get()
            if item is _EOF:
                return
            try:
                self.out.write(item)  # type: ignore[arg-type]
                self.out.flush()
            except (OSError, ValueError):
                # console went away; keep draining so offer() never blocks
                continue

    def offer(self, chunk: bytes) -> None:
        try:
            self.q.put_nowait(chunk)
        except queue.Full:
            self.dropped += 1

    def close(self, timeout: float = 1.0) -> None:
        try:
            self.q.put(_EOF, timeout=timeout)
        except queue.Full:
            return
        self._t.join(timeout)


class LogCollector:
    def __init__(self, mirror_console: bool = False, console: Optional[BinaryIO] = None):
        self.mirror_console = mirror_console
        self.console = console

    def _mirror(self) -> Optional[_ConsoleMirror]:
        if not self.mirror_console:
            return None
        return _ConsoleMirror(self.console or sys.stdout.buffer)

    @staticmethod
    def _discard(stream: Iterable[bytes]) -> None:
        # keep the container's output moving even when there is nowhere to put it
        try:
            for _ in stream:
                pass
        except Exception as e:
            log.warning("log_discard_interrupted", error=str(e))

    def collect(self, stream: Iterable[bytes], destination: Path) -> int:
        """
        Write `stream` verbatim to `destination` (created or truncated).
        Returns the number of bytes written. A failing stream raises
        LogStreamError; the bytes already written are kept.
        """
        written = 0
        try:
            f = open(destination, "wb")
        except OSError as e:
            log.error("log_file_unavailable", path=str(destination), error=str(e))
            self._discard(stream)
            raise LogStreamError(f"cannot open log file {destination}: {e}", bytes_written=0) from e

        mirror = self._mirror()
        try:
            with f:
                try:
                    for chunk in stream:
                        if not chunk:
                            continue
                        f.write(chunk)
                        written += len(chunk)
                        if mirror is not None:
                            mirror.offer(chunk)
                except LogStreamError as e:
                    e.bytes_written = written
                    raise
                except Exception as e:
                    raise LogStreamError(f"log stream interrupted: {e}", bytes_written=written) from e
        finally:
            if mirror is not None:
                mirror.close()
                if mirror.dropped:
                    log.warning("console_mirror_dropped", chunks=mirror.dropped)
        log.info("log_collected", path=str(destination), bytes=written)
        return written
