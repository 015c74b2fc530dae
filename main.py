#!/usr/bin/env python3
"""
acctsync - Account Source Directory Connector

Main entry point for the scan CLI.

Usage:
    python main.py sources --config sources.yaml
    python main.py scan-teams src-1 --config sources.yaml
    python main.py scan-users src-1 --config sources.yaml --incremental --publish
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent / "src"))

from acctsync.cli import cli


if __name__ == '__main__':
    cli()
