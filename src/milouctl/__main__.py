"""Allow ``python -m milouctl`` (used when re-executing as the service account)."""
from __future__ import annotations

from .cli import main

if __name__ == "__main__":
    main()
