"""Main entry point for ``python -m stock_agent``.

Handles:
- Signal handling for graceful shutdown
- Production logging setup
"""

import signal
import sys

from stock_agent.cli import main
from stock_agent.core.logging import get_logger

logger = get_logger(__name__)


def signal_handler(signum: int, frame) -> None:
    """Handle shutdown signals gracefully.

    Args:
        signum: Signal number
        frame: Current stack frame
    """
    signal_name = signal.Signals(signum).name
    logger.info("Received shutdown signal", signal=signal_name)
    sys.exit(0)


if __name__ == "__main__":
    signal.signal(signal.SIGTERM, signal_handler)
    sys.exit(main())
