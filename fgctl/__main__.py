"""
fgctl main module entry point.
Enables running fgctl as a module: python -m fgctl
"""

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
