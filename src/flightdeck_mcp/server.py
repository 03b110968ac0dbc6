"""
Flightdeck MCP Server - Main entry point.

An MCP server that releases iOS applications to TestFlight.
"""

import logging
import sys

from mcp.server.fastmcp import FastMCP

from . import __version__

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("flightdeck-mcp")

mcp = FastMCP("flightdeck-mcp")

# Tool modules register themselves on `mcp` when imported
from . import tools  # noqa: E402,F401


def main() -> None:
    """Main entry point."""
    logger.info(f"Starting Flightdeck MCP Server v{__version__}")
    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server shutting down...")
    except Exception as e:
        logger.error(f"Server error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
