from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ---- host paths ----
    builds_dir: Path = Path("/tmp/buildbox/builds")
    results_dir: Path = Path("/srv/buildbox/results")
    scripts_dir: Path = Path("/srv/buildbox/scripts")

    # ---- naming ----
    image_prefix: str = "herpiko/pbocker"
    container_prefix: str = "bangun-build"
    build_script: str = "/scripts/debian-build.sh"

    # ---- container policy ----
    privileged: bool = True
    listening_port: Optional[int] = 8080
    publish_port: bool = False
    scripts_read_only: bool = True
    extra_env: Dict[str, str] = {}

    # ---- log capture ----
    log_stderr: bool = False
    mirror_console: bool = False

    # ---- lifecycle ----
    job_timeout_s: Optional[float] = None
    stop_timeout_s: int = 10
    cleanup_on_failure: bool = True
    keep_workspace: bool = False
    remove_container: bool = True

    # ---- persistence / observability ----
    state_db_url: Optional[str] = "sqlite:///./buildbox.db"
    log_level: str = "INFO"

    # env prefix BUILDBOX_*
    model_config = SettingsConfigDict(env_prefix="BUILDBOX_", extra="ignore")


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a mapping")
    return data


def load_settings(conf: Optional[Path] = None) -> Settings:
    # 0) base from BUILDBOX_* env
    s = Settings()

    # 1) conf/buildbox.yaml (or BUILDBOX_CONF)
    path = conf or Path(os.environ.get("BUILDBOX_CONF", "conf/buildbox.yaml"))
    data = _read_yaml(path)

    paths = data.get("paths") or {}
    sandbox = data.get("sandbox") or {}
    lifecycle = data.get("lifecycle") or {}

    update: Dict[str, Any] = {}
    for key in ("builds_dir", "results_dir", "scripts_dir"):
        if key in paths:
            update[key] = Path(str(paths[key]))
    for key in ("image_prefix", "container_prefix", "build_script", "state_db_url", "log_level"):
        if key in data:
            update[key] = data[key]
    for key in ("privileged", "publish_port", "scripts_read_only", "log_stderr", "mirror_console"):
        if key in sandbox:
            update[key] = bool(sandbox[key])
    if "listening_port" in sandbox:
        port = sandbox["listening_port"]
        update["listening_port"] = int(port) if port is not None else None
    if "extra_env" in sandbox:
        update["extra_env"] = {str(k): str(v) for k, v in (sandbox["extra_env"] or {}).items()}
    for key in ("cleanup_on_failure", "keep_workspace", "remove_container"):
        if key in lifecycle:
            update[key] = bool(lifecycle[key])
    if "job_timeout_s" in lifecycle:
        timeout = lifecycle["job_timeout_s"]
        update["job_timeout_s"] = float(timeout) if timeout is not None else None
    if "stop_timeout_s" in lifecycle:
        update["stop_timeout_s"] = int(lifecycle["stop_timeout_s"])

    # 2) env vars win over the YAML file
    update = {k: v for k, v in update.items() if f"BUILDBOX_{k.upper()}" not in os.environ}
    return s.model_copy(update=update)
