from __future__ import annotations
from pathlib import Path
from typing import Protocol

import pygit2
import structlog

from ..core.errors import SourceFetchError

log = structlog.get_logger(__name__)


class SourceFetcher(Protocol):
    def fetch(self, source_url: str, destination: Path) -> None: ...


class _ProgressCallbacks(pygit2.RemoteCallbacks):
    """Reports clone progress to the logger, once per 10% step."""

    def __init__(self, source_url: str):
        super().__init__()
        self.source_url = source_url
        self._last_step = -1

    def transfer_progress(self, stats):
        total = stats.total_objects or 0
        if not total:
            return
        step = (stats.received_objects * 10) // total
        if step != self._last_step:
            self._last_step = step
            log.info(
                "clone_progress",
                url=self.source_url,
                received=stats.received_objects,
                indexed=stats.indexed_objects,
                total=total,
                bytes=stats.received_bytes,
            )


class GitSourceFetcher:
    """
    Full clone of the default branch into a fresh directory.
    No reuse, no incremental pulls, no retries.
    """

    def fetch(self, source_url: str, destination: Path) -> None:
        if destination.exists():
            raise SourceFetchError(f"workspace already exists: {destination}")
        destination.parent.mkdir(parents=True, exist_ok=True)

        log.info("clone_start", url=source_url, dest=str(destination))
        try:
            repo = pygit2.clone_repository(
                source_url,
                str(destination),
                callbacks=_ProgressCallbacks(source_url),
            )
        except (pygit2.GitError, KeyError, ValueError, OSError) as e:
            raise SourceFetchError(f"clone of {source_url} failed: {e}") from e

        head = None if repo.head_is_unborn else str(repo.head.target)
        log.info("clone_done", url=source_url, dest=str(destination), head=head)
