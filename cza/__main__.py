"""Allow ``python -m cza``."""

from cza.cli import main

raise SystemExit(main())
