#!/usr/bin/env python3
"""
GeoMx Processing Pipeline - launcher for a source checkout.

Equivalent to the installed ``geomx-ir`` command.
"""

import sys
from pathlib import Path

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from geomx_ir.main import main

if __name__ == "__main__":
    sys.exit(main())
