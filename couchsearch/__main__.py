"""Allow ``python -m couchsearch``."""

from __future__ import annotations

from .cli import main

raise SystemExit(main())
