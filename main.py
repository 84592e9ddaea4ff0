#!/usr/bin/env python3
"""
P2P Interop Harness - Main Entry Point

Runs the dialer/listener interoperability matrix across native and browser
environments.
"""

import sys

from interop_harness.harness import main

if __name__ == "__main__":
    sys.exit(main())
