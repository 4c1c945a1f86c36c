"""Check queue reachability and worker heartbeats; exit 0 when healthy."""

from __future__ import annotations

import json
import sys

from src.videojobs.core.config import AppConfig
from src.videojobs.services.container import OrchestratorContext


def main(argv: list[str] | None = None) -> int:
    _ = argv
    try:
        context = OrchestratorContext.from_config(AppConfig.build_default(), providers={})
    except Exception as exc:
        print(json.dumps({"healthy": False, "error": str(exc)}), file=sys.stdout)
        return 1
    try:
        report = context.health.check()
    finally:
        context.close()
    print(json.dumps(report.as_dict()), file=sys.stdout)
    return 0 if report.healthy else 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
