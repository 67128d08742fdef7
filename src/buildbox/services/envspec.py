from __future__ import annotations

import structlog

from ..core.errors import EnvironmentSetupError
from ..core.models import BuildRequest, EnvironmentSpec, JobPaths, Mount
from ..core.utils import container_name, image_name
from ..settings import Settings

log = structlog.get_logger(__name__)

SRC_TARGET = "/src"
SCRIPTS_TARGET = "/scripts"
RESULT_TARGET = "/result"


class EnvSpecBuilder:
    """
    Turns a request into the container description:
      image      <image_prefix>-<distro>
      name       <container_prefix>-<job_id>  (also the hostname)
      mounts     workspace -> /src (rw), scripts -> /scripts, result -> /result (rw)
      command    bash -c "cd /src && <build_script>"
    Only I/O: creating the result directory.
    """

    def __init__(self, settings: Settings):
        self.s = settings

    def environment(self, request: BuildRequest, job_id: str) -> list[str]:
        env = {}
        if self.s.listening_port is not None:
            env["LISTENINGPORT"] = str(self.s.listening_port)
        env["BUILD_JOB_ID"] = job_id
        env["BUILD_DISTRO"] = request.distro
        env["BUILD_ARCH"] = request.arch
        env.update(self.s.extra_env)
        return [f"{k}={v}" for k, v in env.items()]

    def command(self) -> list[str]:
        return ["/bin/bash", "-c", f"cd {SRC_TARGET} && {self.s.build_script}"]

    def build(self, request: BuildRequest, job_id: str, paths: JobPaths) -> EnvironmentSpec:
        try:
            paths.result_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise EnvironmentSetupError(
                f"cannot create result dir {paths.result_dir}: {e}", job_id=job_id
            ) from e

        scripts = self.s.scripts_dir if self.s.scripts_dir.is_absolute() else self.s.scripts_dir.resolve()
        mounts = [
            Mount(source=paths.workspace, target=SRC_TARGET, read_only=False),
            Mount(source=scripts, target=SCRIPTS_TARGET, read_only=self.s.scripts_read_only),
            Mount(source=paths.result_dir, target=RESULT_TARGET, read_only=False),
        ]

        ports = {}
        if self.s.publish_port and self.s.listening_port is not None:
            ports[f"{self.s.listening_port}/tcp"] = self.s.listening_port

        name = container_name(self.s.container_prefix, job_id)
        spec = EnvironmentSpec(
            image=image_name(self.s.image_prefix, request.distro),
            name=name,
            hostname=name,
            environment=self.environment(request, job_id),
            mounts=mounts,
            command=self.command(),
            privileged=self.s.privileged,
            restart_policy="no",
            log_driver="json-file",
            ports=ports,
            labels={"buildbox.job_id": job_id, "buildbox.distro": request.distro},
        )
        log.info("env_spec_built", job_id=job_id, image=spec.image, container=spec.name,
                 privileged=spec.privileged, ports=ports)
        return spec
