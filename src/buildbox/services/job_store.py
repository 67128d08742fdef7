from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel, Field, create_engine, Session, select
from datetime import datetime, timezone
from typing import List, Optional

from ..core.errors import JobNotFoundError
from ..core.models import JobState

TERMINAL_STATES = [s for s in JobState if s.terminal]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BuildJob(SQLModel, table=True):
    id: str = Field(primary_key=True)
    state: JobState = JobState.CREATED
    distro: str
    arch: str
    source_url: str
    workspace: Optional[str] = None
    result_dir: Optional[str] = None
    container_id: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    # process that runs the job; recovery only touches rows whose owner is gone
    owner_host: Optional[str] = None
    owner_pid: Optional[int] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class JobStore:
    def __init__(self, url="sqlite:///./buildbox.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)
        # Session factory with expire_on_commit=False so returned rows stay readable
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def add(self, job: BuildJob) -> BuildJob:
        with self.SessionLocal() as s:
            s.add(job)
            s.commit()
            return job

    def get(self, job_id: str) -> Optional[BuildJob]:
        with self.SessionLocal() as s:
            return s.get(BuildJob, job_id)

    def require(self, job_id: str) -> BuildJob:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def update(self, job: BuildJob) -> BuildJob:
        job.updated_at = _now()
        with self.SessionLocal() as s:
            # attach the detached object to this session
            db_job = s.merge(job)
            s.commit()
            return db_job

    def transition(self, job_id: str, state: JobState, **fields) -> BuildJob:
        """Move a job to `state`, rejecting moves the state machine does not allow."""
        job = self.require(job_id)
        if job.state != state and not job.state.can_move_to(state):
            raise ValueError(f"illegal transition {job.state.value} -> {state.value} for {job_id}")
        job.state = state
        for k, v in fields.items():
            setattr(job, k, v)
        return self.update(job)

    def unfinished(self) -> List[BuildJob]:
        with self.SessionLocal() as s:
            stmt = select(BuildJob).where(BuildJob.state.not_in(TERMINAL_STATES))
            return list(s.exec(stmt).all())
