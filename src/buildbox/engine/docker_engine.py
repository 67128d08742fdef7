from __future__ import annotations
from typing import Iterator, Optional

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from docker.types import LogConfig
from docker.types import Mount as DockerMount
from requests.exceptions import RequestException

from ..core.errors import (
    ContainerCreateError,
    ContainerStartError,
    LogStreamError,
    WaitError,
)
from ..core.models import EnvironmentSpec, ExitInfo

log = structlog.get_logger(__name__)


class DockerEngine:
    """Execution engine backed by the local Docker daemon (docker SDK)."""

    def __init__(self, client: Optional[docker.DockerClient] = None, *, log_stderr: bool = False):
        self._client = client
        self.log_stderr = log_stderr

    @property
    def client(self) -> docker.DockerClient:
        # connect lazily so that building an engine never touches the daemon
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise ContainerCreateError(f"docker is not available: {e}") from e
        return self._client

    @staticmethod
    def create_kwargs(spec: EnvironmentSpec) -> dict:
        kwargs = dict(
            image=spec.image,
            command=spec.command,
            name=spec.name,
            hostname=spec.hostname,
            environment=spec.environment,
            mounts=[
                DockerMount(target=m.target, source=str(m.source), type="bind", read_only=m.read_only)
                for m in spec.mounts
            ],
            privileged=spec.privileged,
            restart_policy={"Name": spec.restart_policy},
            log_config=LogConfig(type=spec.log_driver, config=spec.log_options),
            labels=spec.labels,
        )
        if spec.ports:
            kwargs["ports"] = spec.ports
        return kwargs

    # ------------ lifecycle ------------

    def create(self, spec: EnvironmentSpec) -> Container:
        try:
            cont = self.client.containers.create(**self.create_kwargs(spec))
        except ImageNotFound as e:
            raise ContainerCreateError(f"image {spec.image} not found: {e}") from e
        except (APIError, DockerException, RequestException) as e:
            raise ContainerCreateError(f"cannot create container {spec.name}: {e}") from e
        log.info("container_created", container=cont.id, name=spec.name, image=spec.image)
        return cont

    def start(self, handle: Container) -> None:
        try:
            handle.start()
        except (APIError, DockerException, RequestException) as e:
            raise ContainerStartError(f"cannot start container {handle.id}: {e}") from e
        log.info("container_started", container=handle.id)

    def stream_logs(self, handle: Container) -> Iterator[bytes]:
        try:
            stream = handle.logs(stdout=True, stderr=self.log_stderr, stream=True, follow=True)
            for chunk in stream:
                yield chunk
        except (APIError, DockerException, RequestException) as e:
            raise LogStreamError(f"log stream of {handle.id} failed: {e}") from e

    def wait(self, handle: Container) -> ExitInfo:
        try:
            res = handle.wait()
        except (APIError, DockerException, RequestException) as e:
            raise WaitError(f"wait on {handle.id} failed: {e}") from e
        err = res.get("Error") or None
        if isinstance(err, dict):
            err = err.get("Message") or None
        return ExitInfo(status_code=int(res.get("StatusCode", -1)), error=err)

    def stop(self, handle: Container, timeout: int = 10) -> None:
        try:
            handle.stop(timeout=timeout)
        except NotFound:
            return
        except (APIError, DockerException, RequestException) as e:
            log.warning("container_stop_failed", container=handle.id, error=str(e))
            handle.kill()

    def remove(self, handle: Container) -> None:
        try:
            handle.remove(force=True)
        except NotFound:
            return
        log.info("container_removed", container=handle.id)

    def remove_by_id(self, container_id: str) -> None:
        try:
            self.client.containers.get(container_id).remove(force=True)
        except NotFound:
            return
        log.info("container_removed", container=container_id)

    def handle_id(self, handle: Container) -> str:
        return handle.id
