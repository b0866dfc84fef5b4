from __future__ import annotations

from taskcycle.commands import main

if __name__ == "__main__":
    raise SystemExit(main())
