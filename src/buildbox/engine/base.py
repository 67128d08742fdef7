from typing import Any, Iterator, Protocol

from ..core.models import EnvironmentSpec, ExitInfo


class ExecutionEngine(Protocol):
    """
    create/start/stream_logs/wait/stop/remove over an opaque container handle.
    stream_logs follows live output until the container exits and can be
    consumed once.
    """

    def create(self, spec: EnvironmentSpec) -> Any: ...
    def start(self, handle: Any) -> None: ...
    def stream_logs(self, handle: Any) -> Iterator[bytes]: ...
    def wait(self, handle: Any) -> ExitInfo: ...
    def stop(self, handle: Any, timeout: int = 10) -> None: ...
    def remove(self, handle: Any) -> None: ...
    def remove_by_id(self, container_id: str) -> None: ...
    def handle_id(self, handle: Any) -> str: ...
