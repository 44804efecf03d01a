"""Allow `python -m stepflow`."""

import sys

from stepflow.cli import main


sys.exit(main())
