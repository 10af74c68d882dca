from __future__ import annotations

import sys

from livestream_health.cli import main


if __name__ == "__main__":
    sys.exit(main())
