"""Start the prompt builder from a source checkout."""
from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from prompt_builder.launcher import main  # noqa: E402

if __name__ == "__main__":
    raise SystemExit(main())
