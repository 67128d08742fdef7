from __future__ import annotations
import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from .core.models import BuildRequest, JobState
from .logging import setup_logging
from .services.orchestrator import build_orchestrator
from .settings import load_settings

EXIT_OK, EXIT_FAILED, EXIT_UNKNOWN = 0, 1, 2


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="buildbox", description="Run one isolated package build.")
    p.add_argument("distro")
    p.add_argument("arch")
    p.add_argument("source_url")
    p.add_argument("--config", type=Path, default=None, help="YAML config (default conf/buildbox.yaml)")
    args = p.parse_args(argv)
    try:
        request = BuildRequest(distro=args.distro, arch=args.arch, source_url=args.source_url)
    except ValueError as e:
        p.error(str(e))

    s = load_settings(args.config)
    setup_logging(s.log_level)

    orc = build_orchestrator(s)
    orc.recover()
    res = orc.build(request)
    print(json.dumps(res.as_dict(), indent=2))

    if res.state == JobState.UNKNOWN:
        return EXIT_UNKNOWN
    return EXIT_OK if res.ok else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
