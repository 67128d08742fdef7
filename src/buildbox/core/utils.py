from __future__ import annotations
import re
import uuid

_TOKEN_RE = re.compile(r"[a-z0-9]+")
# distro/arch names: used as a path component and inside image names
_NAME_RE = re.compile(r"[a-z0-9][a-z0-9._-]*")


def new_job_id() -> str:
    # uuid4 draws from os.urandom; hex drops the dashes
    return uuid.uuid4().hex


def is_safe_token(value: str) -> bool:
    """True when `value` is usable both as a directory name and a container name."""
    return bool(value) and _TOKEN_RE.fullmatch(value) is not None


def is_safe_name(value: str) -> bool:
    return bool(value) and _NAME_RE.fullmatch(value) is not None and ".." not in value


def container_name(prefix: str, job_id: str) -> str:
    return f"{prefix}-{job_id}"


def image_name(prefix: str, distro: str) -> str:
    return f"{prefix}-{distro}"
