"""Library circulation MCP server.

Exposes the circulation engine as MCP tools over stdio. The server owns the
process-level lifecycle: it initializes observability and the database
schema, runs the periodic circulation jobs while it is up, and disposes of
the database engine on shutdown.
"""

import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastmcp import FastMCP

from library_circulation.circulation.scheduler import CirculationScheduler
from library_circulation.config import get_config
from library_circulation.database.session import get_db_manager, reset_db_manager
from library_circulation.observability import initialize_observability
from library_circulation.tools import all_tools

# stderr for logs, stdout is reserved for the stdio transport
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)

logger = logging.getLogger(__name__)

config = get_config()


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
    """Prepare the database and run the circulation jobs for the server's lifetime."""
    initialize_observability()
    get_db_manager().init_database()

    scheduler = CirculationScheduler(config=config)
    if config.scheduler_enabled:
        scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        reset_db_manager()
        logger.info("Shutdown complete")


mcp = FastMCP(
    name=config.server_name,
    version=config.server_version,
    instructions=(
        "Library circulation server. Check books out and in, renew loans, queue "
        "reservations for unavailable books, pick up held books and settle fines. "
        "Every tool takes the resolved user id of the caller."
    ),
    lifespan=lifespan,
)

for tool in all_tools:
    logger.debug("Registering tool: %s", tool["name"])
    try:
        mcp.tool(
            name=tool["name"],
            description=tool["description"],
        )(tool["handler"])
    except Exception:
        logger.exception("Failed to register tool %s", tool["name"])
        raise

logger.info("Registered %d tools", len(all_tools))


def run_stdio_server() -> None:
    """Run the MCP server using stdio transport."""
    logger.info("Starting %s v%s on stdio transport", config.server_name, config.server_version)

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug mode enabled")
    else:
        logging.getLogger().setLevel(config.log_level)
        logging.getLogger("fastmcp").setLevel(logging.WARNING)

    def signal_handler(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s, initiating shutdown...", signum)
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        mcp.run(transport="stdio")
    except Exception:
        logger.exception("Fatal error in MCP server")
        sys.exit(1)


def main() -> None:
    """Entry point for ``library-circulation``."""
    try:
        logger.info("Library Circulation Server v%s", config.server_version)
        logger.info("Transport: %s, debug: %s", config.transport, config.debug)

        if config.transport == "stdio":
            run_stdio_server()
        else:
            logger.error("Unsupported transport: %s", config.transport)
            sys.exit(1)

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception:
        logger.exception("Failed to start MCP server")
        sys.exit(1)


if __name__ == "__main__":
    main()
