from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT / "src") not in sys.path:
    sys.path.append(str(ROOT / "src"))

from nh3_workflow.cli import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main())
