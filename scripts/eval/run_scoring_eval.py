# ruff: noqa: E402

from __future__ import annotations

import json
import os
from pathlib import Path
import sys

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

os.environ.setdefault("JWT_SECRET", "offline-eval-signing-secret-0123456789")

from rolecoach.app.evaluation.suite import run_offline_eval
from main import app


def main() -> int:
    report = run_offline_eval(app)
    print(json.dumps(report, indent=2))
    return 0 if report["passed"] else 1


if __name__ == "__main__":
    sys.exit(main())
