"""WipeBridge entry point.

Equivalent to the installed ``wipebridge`` command; lets the tool run
straight from a checkout with ``python main.py``.
"""

from __future__ import annotations

from wipebridge.cli import main

if __name__ == "__main__":
    main()
