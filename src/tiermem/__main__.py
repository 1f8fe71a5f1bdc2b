"""
tiermem entry point - supports `python -m tiermem`
"""

from tiermem.main import main

if __name__ == "__main__":
    raise SystemExit(main())
