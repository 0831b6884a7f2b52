from __future__ import annotations

import sys
from pathlib import Path

# Ensure repository root on path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from deriv_alerts.live.app import main  # noqa: E402


if __name__ == "__main__":
    main()
