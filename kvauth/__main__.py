"""Allow ``python -m kvauth``."""

import sys

from .cli import main


sys.exit(main())
