# =============================================================================
# Osprey Entry Point for `python -m osprey`
# =============================================================================
# This module allows Osprey to be run as a Python module:
#
#   python -m osprey sync personal
#
# This is equivalent to running the 'osprey' command after installation.
# =============================================================================

import sys

from osprey.app import main

if __name__ == "__main__":
    sys.exit(main())
