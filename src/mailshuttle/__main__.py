# =============================================================================
# mailshuttle Entry Point for `python -m mailshuttle`
# =============================================================================
# Equivalent to running the 'mailshuttle' command after installation.
# =============================================================================

import sys

from mailshuttle.app import main

if __name__ == "__main__":
    sys.exit(main())
