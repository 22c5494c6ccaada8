#!/usr/bin/env python3
"""
trendpipe - Incremental EMA Trend Pipeline
==========================================

Main entry point for running trendpipe.

Usage:
    python main.py run
    python main.py serve --port 8787
    python main.py seed config/reference.yaml
    python main.py --log-level DEBUG run    # debug lines on console and file

Log level can also be set in config (``system.log_level``) or with
``TRENDPIPE_LOG_LEVEL``.
"""

import sys

from trendpipe.cli import main

if __name__ == "__main__":
    sys.exit(main())
