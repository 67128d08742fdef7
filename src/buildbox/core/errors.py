from __future__ import annotations
from typing import Optional


class BuildError(Exception):
    """Base for every job-level failure; carries the job id when known."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class SourceFetchError(BuildError):
    """Clone failed (network, auth, bad URL). Raised before any container exists."""


class EnvironmentSetupError(BuildError):
    """Result directory could not be prepared."""


class ContainerCreateError(BuildError):
    """Engine refused to create the container (missing image, engine down)."""


class ContainerStartError(BuildError):
    """Container was created but did not start."""


class LogStreamError(BuildError):
    """Log stream broke mid-way. Whatever was written stays on disk."""

    def __init__(self, message: str, bytes_written: int = 0, job_id: Optional[str] = None):
        super().__init__(message, job_id=job_id)
        self.bytes_written = bytes_written


class WaitError(BuildError):
    """Exit status could not be obtained; job outcome is unknown."""


class BuildScriptError(BuildError):
    """Build script exited with a non-zero status."""

    def __init__(self, exit_code: int, job_id: Optional[str] = None, detail: Optional[str] = None):
        msg = f"build script exited with status {exit_code}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg, job_id=job_id)
        self.exit_code = exit_code


class JobCancelledError(BuildError):
    def __init__(self, reason: str, job_id: Optional[str] = None):
        super().__init__(f"job cancelled: {reason}", job_id=job_id)
        self.reason = reason


class JobNotFoundError(BuildError):
    def __init__(self, job_id: str):
        super().__init__("job_not_found", job_id=job_id)
