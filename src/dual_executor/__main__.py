"""dual-executor entry point.

Supports: python -m dual_executor
"""

from .app import main

if __name__ == "__main__":
    main()
