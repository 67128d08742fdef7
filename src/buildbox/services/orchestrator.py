from __future__ import annotations
import os
import shutil
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import wait as futures_wait
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

import structlog

from ..core.errors import (
    BuildError,
    BuildScriptError,
    JobCancelledError,
    LogStreamError,
    WaitError,
)
from ..core.models import BuildRequest, BuildResult, ExitInfo, JobPaths, JobState, job_paths
from ..core.utils import is_safe_token, new_job_id
from ..engine.base import ExecutionEngine
from ..settings import Settings
from .collector import LogCollector
from .envspec import EnvSpecBuilder
from .job_store import BuildJob, JobStore
from .source import GitSourceFetcher, SourceFetcher

log = structlog.get_logger(__name__)

_WATCH_INTERVAL_S = 0.1


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    return True


def _owner_alive(row: BuildJob) -> bool:
    if row.owner_pid is None:
        return False
    if row.owner_host != socket.gethostname():
        # no way to check a process on another host
        return True
    return _pid_alive(row.owner_pid)


@dataclass
class _Job:
    id: str
    request: BuildRequest
    paths: JobPaths
    state: JobState = JobState.CREATED
    handle: Any = None
    owns_workspace: bool = False


class Orchestrator:
    """
    One build per build() call:
      allocate id -> clone -> env spec -> create -> start
      -> drain logs (worker thread) while waiting for exit -> result.
    Job-level failures end up in BuildResult.error, they are not raised.
    """

    def __init__(
        self,
        settings: Settings,
        fetcher: SourceFetcher,
        engine: ExecutionEngine,
        collector: Optional[LogCollector] = None,
        store: Optional[JobStore] = None,
    ):
        self.s = settings
        self.fetcher = fetcher
        self.engine = engine
        self.collector = collector or LogCollector(mirror_console=settings.mirror_console)
        self.store = store
        self.specs = EnvSpecBuilder(settings)

    # ------------ state ------------

    def _advance(self, job: _Job, state: JobState, **fields) -> None:
        if not job.state.can_move_to(state):
            raise ValueError(f"illegal transition {job.state.value} -> {state.value}")
        job.state = state
        if self.store is not None:
            try:
                self.store.transition(job.id, state, **fields)
            except ValueError:
                row = self.store.get(job.id)
                if row is None or not row.state.terminal:
                    raise
                # closed behind our back (recover() from another process)
                log.warning("job_already_closed", job_id=job.id, stored=row.state.value,
                            state=state.value)
                return
        log.info("job_state", job_id=job.id, state=state.value)

    def _new_job(self, request: BuildRequest, job_id: str) -> _Job:
        if not is_safe_token(job_id):
            raise ValueError(f"unsafe job id: {job_id!r}")
        paths = job_paths(self.s.builds_dir, self.s.results_dir, job_id, request.distro)
        return _Job(id=job_id, request=request, paths=paths)

    def _register(self, job: _Job) -> None:
        if self.store is None:
            return
        row = self.store.get(job.id)
        if row is not None:
            if row.state != JobState.CREATED:
                raise ValueError(f"job {job.id} already exists in state {row.state.value}")
            return
        self.store.add(BuildJob(
            id=job.id, state=JobState.CREATED,
            distro=job.request.distro, arch=job.request.arch, source_url=job.request.source_url,
            workspace=str(job.paths.workspace), result_dir=str(job.paths.result_dir),
            owner_host=socket.gethostname(), owner_pid=os.getpid(),
        ))

    def register(self, request: BuildRequest, job_id: str) -> None:
        """Record `job_id` as CREATED so it is visible before build() picks it up."""
        self._register(self._new_job(request, job_id))

    # ------------ cleanup ------------

    def _remove_workspace(self, job_id: str, workspace: Path) -> None:
        if not workspace.exists():
            return
        try:
            shutil.rmtree(workspace)
            log.info("workspace_removed", job_id=job_id, path=str(workspace))
        except OSError as e:
            log.warning("workspace_remove_failed", job_id=job_id, path=str(workspace), error=str(e))

    def _remove_container(self, job: _Job) -> None:
        if job.handle is None:
            return
        try:
            self.engine.remove(job.handle)
        except Exception as e:
            # the job's own error is what the caller needs; keep going
            log.warning("container_remove_failed", job_id=job.id, error=str(e))

    def _cleanup(self, job: _Job, success: bool) -> None:
        if success:
            if not self.s.keep_workspace:
                self._remove_workspace(job.id, job.paths.workspace)
            if self.s.remove_container:
                self._remove_container(job)
            return
        if self.s.cleanup_on_failure:
            if job.owns_workspace:
                self._remove_workspace(job.id, job.paths.workspace)
            self._remove_container(job)
        else:
            log.warning("job_left_behind", job_id=job.id, workspace=str(job.paths.workspace),
                        container=self._container_id(job))

    def log_file(self, job_id: str, distro: str) -> Path:
        return job_paths(self.s.builds_dir, self.s.results_dir, job_id, distro).log_file

    def _container_id(self, job: _Job) -> Optional[str]:
        return self.engine.handle_id(job.handle) if job.handle is not None else None

    # ------------ entry ------------

    def build(
        self,
        request: BuildRequest,
        job_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> BuildResult:
        job = self._new_job(request, job_id or new_job_id())
        job_id, paths = job.id, job.paths
        self._register(job)
        log.info("job_start", job_id=job_id, distro=request.distro, arch=request.arch,
                 url=request.source_url)

        try:
            job.owns_workspace = not paths.workspace.exists()
            self.fetcher.fetch(request.source_url, paths.workspace)
            self._advance(job, JobState.SOURCE_FETCHED)

            spec = self.specs.build(request, job_id, paths)
            job.handle = self.engine.create(spec)
            self._advance(job, JobState.PROVISIONED, container_id=self._container_id(job))

            self.engine.start(job.handle)
            self._advance(job, JobState.RUNNING)
        except BuildError as e:
            return self._abort(job, e)

        return self._supervise(job, cancel)

    def _abort(self, job: _Job, err: BuildError) -> BuildResult:
        err.job_id = err.job_id or job.id
        log.error("job_aborted", job_id=job.id, state=job.state.value,
                  error_type=type(err).__name__, error=str(err))
        self._cleanup(job, success=False)
        self._advance(job, JobState.FAILED, error=str(err))
        return BuildResult(
            job_id=job.id,
            state=job.state,
            log_path=job.paths.log_file if job.paths.log_file.exists() else None,
            result_dir=job.paths.result_dir if job.paths.result_dir.exists() else None,
            error=err,
        )

    # ------------ running container ------------

    def _watch(self, job: _Job, cancel: Optional[threading.Event], finished: threading.Event,
               outcome: dict) -> None:
        deadline = None
        if self.s.job_timeout_s is not None:
            deadline = time.monotonic() + self.s.job_timeout_s
        while not finished.wait(_WATCH_INTERVAL_S):
            if cancel is not None and cancel.is_set():
                reason = "cancelled"
            elif deadline is not None and time.monotonic() >= deadline:
                reason = f"timeout after {self.s.job_timeout_s}s"
            else:
                continue
            outcome["reason"] = reason
            log.warning("job_stopping", job_id=job.id, reason=reason)
            try:
                self.engine.stop(job.handle, timeout=self.s.stop_timeout_s)
            except Exception as e:
                log.error("container_stop_failed", job_id=job.id, error=str(e))
            return

    def _supervise(self, job: _Job, cancel: Optional[threading.Event]) -> BuildResult:
        finished = threading.Event()
        outcome: dict = {}
        watcher = None
        if cancel is not None or self.s.job_timeout_s is not None:
            watcher = threading.Thread(
                target=self._watch, args=(job, cancel, finished, outcome),
                name=f"watch-{job.id[:8]}", daemon=True,
            )
            watcher.start()

        exit_info: Optional[ExitInfo] = None
        wait_error: Optional[WaitError] = None
        log_error: Optional[LogStreamError] = None
        written = 0

        # the drain must be consuming before wait() blocks, or a full log
        # pipe can stall the container forever
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"drain-{job.id[:8]}") as pool:
            drain = pool.submit(self.collector.collect, self.engine.stream_logs(job.handle),
                                job.paths.log_file)
            try:
                exit_info = self.engine.wait(job.handle)
            except WaitError as e:
                e.job_id = job.id
                wait_error = e
                log.error("wait_failed", job_id=job.id, error=str(e))
                done, _ = futures_wait([drain], timeout=self.s.stop_timeout_s)
                if not done:
                    # container state unknown and still talking; force end of stream
                    try:
                        self.engine.stop(job.handle, timeout=self.s.stop_timeout_s)
                    except Exception as e:
                        log.error("container_stop_failed", job_id=job.id, error=str(e))
            try:
                written = drain.result()
            except LogStreamError as e:
                e.job_id = job.id
                log_error = e
                written = e.bytes_written
                log.warning("log_stream_failed", job_id=job.id, error=str(e), bytes=written)

        finished.set()
        if watcher is not None:
            watcher.join()

        error: Optional[BuildError] = None
        exit_code = exit_info.status_code if exit_info else None
        if "reason" in outcome:
            state, error = JobState.FAILED, JobCancelledError(outcome["reason"], job_id=job.id)
        elif wait_error is not None:
            state, error = JobState.UNKNOWN, wait_error
        elif exit_code == 0:
            state = JobState.COMPLETED
        else:
            state = JobState.FAILED
            error = BuildScriptError(exit_code, job_id=job.id, detail=exit_info.error)

        log.info("job_finished", job_id=job.id, state=state.value, exit_code=exit_code,
                 bytes_logged=written)
        self._cleanup(job, success=state == JobState.COMPLETED)
        self._advance(job, state, exit_code=exit_code, error=str(error) if error else None)
        return BuildResult(
            job_id=job.id,
            state=state,
            log_path=job.paths.log_file,
            result_dir=job.paths.result_dir,
            exit_code=exit_code,
            error=error,
            log_error=log_error,
            bytes_logged=written,
        )

    # ------------ crash recovery ------------

    def recover(self) -> List[str]:
        """
        Reconcile jobs a previous process left in a non-terminal state:
        remove their container and workspace and close them out.
        Rows whose owning process is still alive are left alone.
        """
        if self.store is None:
            return []
        recovered = []
        for row in self.store.unfinished():
            if _owner_alive(row):
                log.debug("job_owner_alive", job_id=row.id, host=row.owner_host, pid=row.owner_pid)
                continue
            if row.container_id:
                try:
                    self.engine.remove_by_id(row.container_id)
                except Exception as e:
                    log.warning("container_remove_failed", job_id=row.id, error=str(e))
            if row.workspace:
                self._remove_workspace(row.id, Path(row.workspace))
            state = JobState.UNKNOWN if row.state == JobState.RUNNING else JobState.FAILED
            self.store.transition(row.id, state, error="interrupted")
            log.warning("job_recovered", job_id=row.id, was=row.state.value, now=state.value)
            recovered.append(row.id)
        return recovered


def build_orchestrator(settings: Settings) -> Orchestrator:
    """Wire the production collaborators: pygit2 fetcher, Docker engine, SQLite store."""
    from ..engine.docker_engine import DockerEngine

    store = JobStore(settings.state_db_url) if settings.state_db_url else None
    return Orchestrator(
        settings,
        fetcher=GitSourceFetcher(),
        engine=DockerEngine(log_stderr=settings.log_stderr),
        collector=LogCollector(mirror_console=settings.mirror_console),
        store=store,
    )
