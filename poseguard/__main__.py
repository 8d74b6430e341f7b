"""Entry point for `python -m poseguard`."""

import sys

from poseguard.cli import main

sys.exit(main())
