from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from .errors import BuildError, LogStreamError
from .utils import is_safe_name, is_safe_token


class JobState(str, Enum):
    CREATED = "CREATED"
    SOURCE_FETCHED = "SOURCE_FETCHED"
    PROVISIONED = "PROVISIONED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"  # exit status could not be read

    @property
    def terminal(self) -> bool:
        return not JOB_TRANSITIONS[self]

    def can_move_to(self, other: "JobState") -> bool:
        return other in JOB_TRANSITIONS[self]


JOB_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.CREATED: frozenset({JobState.SOURCE_FETCHED, JobState.FAILED}),
    JobState.SOURCE_FETCHED: frozenset({JobState.PROVISIONED, JobState.FAILED}),
    JobState.PROVISIONED: frozenset({JobState.RUNNING, JobState.FAILED}),
    JobState.RUNNING: frozenset({JobState.COMPLETED, JobState.FAILED, JobState.UNKNOWN}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.UNKNOWN: frozenset(),
}


@dataclass(frozen=True)
class BuildRequest:
    distro: str
    arch: str
    source_url: str

    def __post_init__(self):
        for name in ("distro", "arch", "source_url"):
            if not getattr(self, name):
                raise ValueError(f"BuildRequest.{name} must not be empty")
        for name in ("distro", "arch"):
            if not is_safe_name(getattr(self, name)):
                raise ValueError(f"BuildRequest.{name} is not a safe name: {getattr(self, name)!r}")


@dataclass(frozen=True)
class JobPaths:
    workspace: Path    # builds/<job_id>, cloned source
    result_dir: Path   # results/<job_id>/<distro>, outlives the job
    log_file: Path     # result_dir/log.txt


def job_paths(builds_dir: Path, results_dir: Path, job_id: str, distro: str) -> JobPaths:
    builds_dir = builds_dir if builds_dir.is_absolute() else builds_dir.resolve()
    results_dir = results_dir if results_dir.is_absolute() else results_dir.resolve()
    result_dir = results_dir / job_id / distro
    if not is_safe_token(job_id):
        raise ValueError(f"unsafe job id: {job_id!r}")
    if not is_safe_name(distro) or result_dir.parent != results_dir / job_id:
        raise ValueError(f"distro {distro!r} escapes the result dir of job {job_id}")
    return JobPaths(
        workspace=builds_dir / job_id,
        result_dir=result_dir,
        log_file=result_dir / "log.txt",
    )


@dataclass(frozen=True)
class Mount:
    source: Path
    target: str
    read_only: bool


@dataclass
class EnvironmentSpec:
    image: str
    name: str
    hostname: str
    environment: List[str]
    mounts: List[Mount]
    command: List[str]
    privileged: bool
    restart_policy: str = "no"
    log_driver: str = "json-file"
    log_options: Dict[str, str] = field(default_factory=dict)
    ports: Dict[str, int] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExitInfo:
    status_code: int
    error: Optional[str] = None


@dataclass
class BuildResult:
    job_id: str
    state: JobState
    log_path: Optional[Path] = None
    result_dir: Optional[Path] = None
    exit_code: Optional[int] = None
    error: Optional[BuildError] = None
    log_error: Optional[LogStreamError] = None
    bytes_logged: int = 0

    @property
    def ok(self) -> bool:
        return self.state == JobState.COMPLETED and self.exit_code == 0 and self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def as_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "log_path": str(self.log_path) if self.log_path else None,
            "result_dir": str(self.result_dir) if self.result_dir else None,
            "exit_code": self.exit_code,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "log_error": str(self.log_error) if self.log_error else None,
            "bytes_logged": self.bytes_logged,
        }
