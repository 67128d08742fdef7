import io
import os
import sys

import pytest

from buildbox.core.errors import LogStreamError
from buildbox.services.collector import LogCollector


def _open_fds_for(path):
    if not sys.platform.startswith("linux"):
        pytest.skip("needs /proc/self/fd")
    target = str(path.resolve())
    hits = []
    for fd in os.listdir("/proc/self/fd"):
        try:
            if os.readlink(f"/proc/self/fd/{fd}") == target:
                hits.append(fd)
        except OSError:
            continue
    return hits


@pytest.mark.parametrize("payload", [b"", b"build ok\n", bytes(range(256)) * 64])
def test_collect_writes_stream_verbatim(tmp_path, payload):
    dest = tmp_path / "log.txt"
    chunks = [payload[i:i + 100] for i in range(0, len(payload), 100)]

    n = LogCollector().collect(iter(chunks), dest)

    assert n == len(payload)
    assert dest.read_bytes() == payload
    assert _open_fds_for(dest) == []


def test_collect_truncates_existing_file(tmp_path):
    dest = tmp_path / "log.txt"
    dest.write_bytes(b"stale output from somewhere else\n")

    LogCollector().collect([b"fresh\n"], dest)

    assert dest.read_bytes() == b"fresh\n"


def test_stream_error_keeps_partial_log_and_releases_handle(tmp_path):
    dest = tmp_path / "log.txt"

    def stream():
        yield b"step 1\n"
        yield b"step 2\n"
        raise ConnectionResetError("daemon hung up")

    with pytest.raises(LogStreamError) as ei:
        LogCollector().collect(stream(), dest)

    assert ei.value.bytes_written == len(b"step 1\nstep 2\n")
    assert isinstance(ei.value.__cause__, ConnectionResetError)
    assert dest.read_bytes() == b"step 1\nstep 2\n"
    assert _open_fds_for(dest) == []


def test_log_stream_error_from_engine_gets_byte_count(tmp_path):
    dest = tmp_path / "log.txt"

    def stream():
        yield b"abc"
        raise LogStreamError("connection reset")

    with pytest.raises(LogStreamError) as ei:
        LogCollector().collect(stream(), dest)
    assert ei.value.bytes_written == 3


def test_console_mirror_gets_a_copy(tmp_path):
    dest = tmp_path / "log.txt"
    console = io.BytesIO()

    LogCollector(mirror_console=True, console=console).collect([b"a\n", b"b\n"], dest)

    assert dest.read_bytes() == b"a\nb\n"
    assert console.getvalue() == b"a\nb\n"


class _StuckConsole(io.RawIOBase):
    def __init__(self, gate):
        self.gate = gate

    def writable(self):
        return True

    def write(self, b):
        self.gate.wait(5)
        return len(b)


def test_slow_console_never_blocks_the_file(tmp_path):
    import threading

    gate = threading.Event()
    dest = tmp_path / "log.txt"
    payload = [b"x" * 64] * 2000

    n = LogCollector(mirror_console=True, console=_StuckConsole(gate)).collect(payload, dest)
    gate.set()

    assert n == 64 * 2000
    assert dest.stat().st_size == 64 * 2000


def test_unopenable_destination_raises_log_stream_error(tmp_path):
    dest = tmp_path / "log.txt"
    dest.mkdir()
    consumed = []

    def stream():
        for chunk in (b"a\n", b"b\n"):
            consumed.append(chunk)
            yield chunk

    with pytest.raises(LogStreamError) as ei:
        LogCollector().collect(stream(), dest)

    assert ei.value.bytes_written == 0
    assert isinstance(ei.value.__cause__, OSError)
    # the stream is still drained so the producer never blocks
    assert consumed == [b"a\n", b"b\n"]
