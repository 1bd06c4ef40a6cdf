"""Allow ``python -m podbox_deploy``."""

import sys

from podbox_deploy.cli import main

if __name__ == "__main__":
    sys.exit(main())
