"""dual-executor - run a background helper and a foreground task together.

The background process starts first and is asked to stop with the line
"stop" on its stdin when the foreground process exits; it is killed if it
does not comply in time. Output of both is relayed to the console and the
console is relayed to the foreground.

Usage:
    dual-executor            (reads ./config.properties)
    python -m dual_executor
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
