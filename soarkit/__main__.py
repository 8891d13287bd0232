"""Allow ``python -m soarkit``."""

import sys

from soarkit.cli import main

sys.exit(main())
