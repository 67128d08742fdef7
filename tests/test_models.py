import re

import pytest

from buildbox.core.models import BuildRequest, BuildResult, JobState, JOB_TRANSITIONS, job_paths
from buildbox.core.utils import container_name, image_name, is_safe_name, is_safe_token, new_job_id


def test_job_ids_unique_and_safe():
    ids = [new_job_id() for _ in range(10000)]
    assert len(set(ids)) == len(ids)
    for jid in ids:
        assert re.fullmatch(r"[0-9a-f]{32}", jid)
        assert is_safe_token(jid)


@pytest.mark.parametrize("value", ["", "a-b", "A1", "../x", "a b", "a/b"])
def test_unsafe_tokens(value):
    assert not is_safe_token(value)


def test_naming():
    assert container_name("bangun-build", "f00d") == "bangun-build-f00d"
    assert image_name("herpiko/pbocker", "noble") == "herpiko/pbocker-noble"


def test_request_requires_every_field():
    with pytest.raises(ValueError):
        BuildRequest(distro="noble", arch="", source_url="x")
    req = BuildRequest(distro="noble", arch="amd64", source_url="x")
    with pytest.raises(AttributeError):
        req.distro = "jammy"


@pytest.mark.parametrize("field", ["distro", "arch"])
@pytest.mark.parametrize("value", ["../../escaped", "noble/..", "Noble", "-x", "a..b", "noble\n"])
def test_request_rejects_unsafe_names(field, value):
    kwargs = {"distro": "noble", "arch": "amd64", "source_url": "x"}
    kwargs[field] = value
    with pytest.raises(ValueError):
        BuildRequest(**kwargs)


@pytest.mark.parametrize("value", ["noble", "bookworm-backports", "arm64", "ubuntu22.04", "i386_x"])
def test_safe_names(value):
    assert is_safe_name(value)
    BuildRequest(distro=value, arch=value, source_url="x")


def test_state_machine():
    assert JobState.CREATED.can_move_to(JobState.SOURCE_FETCHED)
    assert not JobState.CREATED.can_move_to(JobState.RUNNING)
    assert JobState.RUNNING.can_move_to(JobState.UNKNOWN)
    assert not JobState.PROVISIONED.can_move_to(JobState.UNKNOWN)
    terminal = {s for s in JobState if s.terminal}
    assert terminal == {JobState.COMPLETED, JobState.FAILED, JobState.UNKNOWN}
    assert set(JOB_TRANSITIONS) == set(JobState)


def test_job_paths(tmp_path):
    p = job_paths(tmp_path / "b", tmp_path / "r", "f00d", "noble")
    assert p.workspace == tmp_path / "b" / "f00d"
    assert p.result_dir == tmp_path / "r" / "f00d" / "noble"
    assert p.log_file == p.result_dir / "log.txt"


@pytest.mark.parametrize("distro", ["../../escaped", "..", ".", "a/b", "noble\n", "/etc"])
def test_job_paths_reject_escaping_distro(tmp_path, distro):
    with pytest.raises(ValueError):
        job_paths(tmp_path / "b", tmp_path / "r", "f00d", distro)


def test_result_as_dict():
    res = BuildResult(job_id="f00d", state=JobState.COMPLETED, exit_code=0)
    d = res.as_dict()
    assert res.ok
    assert d["state"] == "COMPLETED"
    assert d["error"] is None
