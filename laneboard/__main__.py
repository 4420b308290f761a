"""Run the laneboard command line with ``python -m laneboard``."""

import sys

from .cli import main


sys.exit(main())
