from __future__ import annotations
from functools import lru_cache
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..core.errors import JobNotFoundError
from ..core.models import BuildRequest
from ..core.utils import new_job_id
from ..services.orchestrator import Orchestrator, build_orchestrator
from ..settings import load_settings

app = FastAPI(title="buildbox")


@lru_cache(maxsize=1)
def get_orchestrator() -> Orchestrator:
    return build_orchestrator(load_settings())


# --------- Schemas ---------
_NAME_PATTERN = r"^[a-z0-9][a-z0-9._-]*$"


class CreateBuildReq(BaseModel):
    distro: str = Field(min_length=1, pattern=_NAME_PATTERN)
    arch: str = Field(min_length=1, pattern=_NAME_PATTERN)
    source_url: str = Field(min_length=1)


class CreateBuildRes(BaseModel):
    job_id: str


class BuildStatusRes(BaseModel):
    id: str
    state: str
    distro: str
    arch: str
    source_url: str
    container_id: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    result_dir: Optional[str] = None
    created_at: str
    updated_at: str


class LogRes(BaseModel):
    job_id: str
    log: str


def _job_or_404(orc: Orchestrator, job_id: str):
    if orc.store is None:
        raise HTTPException(status_code=404, detail="job_store_disabled")
    try:
        return orc.store.require(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="job_not_found")


# --------- Endpoints ---------

@app.get("/health")
def health():
    return {"ok": True}


@app.post("/builds", response_model=CreateBuildRes, status_code=202)
def create_build(req: CreateBuildReq, tasks: BackgroundTasks,
                 orc: Orchestrator = Depends(get_orchestrator)):
    job_id = new_job_id()
    try:
        request = BuildRequest(distro=req.distro, arch=req.arch, source_url=req.source_url)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    # row exists before the response so an immediate GET never 404s
    orc.register(request, job_id)
    tasks.add_task(orc.build, request, job_id)
    return CreateBuildRes(job_id=job_id)


@app.get("/builds/{job_id}", response_model=BuildStatusRes)
def get_build(job_id: str, orc: Orchestrator = Depends(get_orchestrator)):
    job = _job_or_404(orc, job_id)
    return BuildStatusRes(
        id=job.id,
        state=job.state.value,
        distro=job.distro,
        arch=job.arch,
        source_url=job.source_url,
        container_id=job.container_id,
        exit_code=job.exit_code,
        error=job.error,
        result_dir=job.result_dir,
        created_at=job.created_at.isoformat(),
        updated_at=job.updated_at.isoformat(),
    )


@app.get("/builds/{job_id}/log", response_model=LogRes)
def get_build_log(job_id: str, orc: Orchestrator = Depends(get_orchestrator)):
    job = _job_or_404(orc, job_id)
    log_file = orc.log_file(job.id, job.distro)
    if not log_file.exists():
        raise HTTPException(status_code=404, detail="log_not_found")
    return LogRes(job_id=job.id, log=log_file.read_text(encoding="utf-8", errors="replace"))
