#!/usr/bin/env python3
"""Past-paper ingestion pipeline runner (same flags as the ``pastpapers`` command)."""

import sys
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from pastpapers.cli import main

if __name__ == "__main__":
    sys.exit(main())
