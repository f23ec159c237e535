"""Entry point for the screenpilot console application."""
from __future__ import annotations

import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path.cwd() / ".env")

from screenpilot.cli import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main())
