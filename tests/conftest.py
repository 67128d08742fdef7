"""
Shared fixtures: settings rooted in tmp_path plus in-memory fakes for the
source fetcher and the execution engine.
"""
import itertools
import threading
from pathlib import Path

import pytest

from buildbox.core.errors import (
    ContainerCreateError,
    ContainerStartError,
    LogStreamError,
    SourceFetchError,
    WaitError,
)
from buildbox.core.models import BuildRequest, ExitInfo
from buildbox.logging import setup_logging
from buildbox.services.orchestrator import Orchestrator
from buildbox.settings import Settings


class FakeFetcher:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def fetch(self, source_url: str, destination: Path) -> None:
        self.calls.append((source_url, destination))
        if self.fail:
            raise SourceFetchError(f"could not resolve {source_url}")
        destination.mkdir(parents=True)
        (destination / "debian").mkdir()
        (destination / "debian" / "control").write_text("Source: demo\n")


class FakeHandle:
    _ids = itertools.count(1)

    def __init__(self, spec):
        self.id = f"c{next(self._ids):04d}"
        self.spec = spec
        self.stopped = threading.Event()


class FakeEngine:
    """Records every call; behavior is driven by constructor flags."""

    def __init__(self, logs=(b"build ok\n",), exit_code=0, create_error=False,
                 start_error=False, wait_error=False, stream_error_after=None,
                 run_until_stopped=False, stop_error=False):
        self.logs = list(logs)
        self.exit_code = exit_code
        self.create_error = create_error
        self.start_error = start_error
        self.wait_error = wait_error
        self.stream_error_after = stream_error_after
        self.run_until_stopped = run_until_stopped
        self.stop_error = stop_error
        self.created, self.started, self.stopped, self.removed = [], [], [], []
        self.removed_ids = []

    def create(self, spec):
        if self.create_error:
            raise ContainerCreateError(f"image {spec.image} not found")
        h = FakeHandle(spec)
        self.created.append(h)
        return h

    def start(self, handle):
        if self.start_error:
            raise ContainerStartError("cannot start")
        self.started.append(handle)

    def stream_logs(self, handle):
        for i, chunk in enumerate(self.logs):
            if self.stream_error_after is not None and i >= self.stream_error_after:
                raise LogStreamError("connection reset")
            yield chunk
        if self.run_until_stopped:
            handle.stopped.wait(10)

    def wait(self, handle):
        if self.wait_error:
            raise WaitError("daemon went away")
        if self.run_until_stopped:
            handle.stopped.wait(10)
            return ExitInfo(status_code=137)
        return ExitInfo(status_code=self.exit_code)

    def stop(self, handle, timeout=10):
        self.stopped.append(handle)
        handle.stopped.set()
        if self.stop_error:
            # the container did go down, the daemon just failed to say so
            raise RuntimeError("stop request timed out")

    def remove(self, handle):
        self.removed.append(handle)

    def remove_by_id(self, container_id):
        self.removed_ids.append(container_id)

    def handle_id(self, handle):
        return handle.id


@pytest.fixture(scope="session", autouse=True)
def _logging():
    # events go to stderr so CLI output on stdout stays parseable
    setup_logging("DEBUG")


@pytest.fixture
def settings(tmp_path):
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    return Settings(
        builds_dir=tmp_path / "builds",
        results_dir=tmp_path / "results",
        scripts_dir=scripts,
        state_db_url=None,
    )


@pytest.fixture
def request_noble():
    return BuildRequest(distro="noble", arch="amd64", source_url="https://example.invalid/demo.git")


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def orchestrator(settings, fetcher, engine):
    return Orchestrator(settings, fetcher=fetcher, engine=engine)
