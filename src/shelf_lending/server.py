"""Shelf Lending MCP Server

Exposes the loan engine over MCP:
- Tools: offering, borrowing, answering and ending loans; renewals;
  highlights and notes; lending templates; the maintenance sweep
- Resources: loans by role, renewals, audit history, entitlements,
  visible annotations, templates and notifications

The maintenance sweep runs on a background scheduler alongside the server
so loans expire and reminders go out even when nobody reads them.
"""

import logging
import signal
import sys
from typing import Any

from fastmcp import FastMCP

from .config import get_config
from .database.session import get_db_manager
from .maintenance import ApschedulerTicker, MaintenanceSweep, Ticker
from .observability import initialize_observability
from .observability.middleware import MCPInstrumentationMiddleware
from .resources import all_resources
from .tools import all_tools

# Initialize logging - stderr for logs, stdout for MCP protocol
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)

logger = logging.getLogger(__name__)

config = get_config()

initialize_observability()

mcp = FastMCP(
    name=config.server_name,
    version=config.server_version,
    instructions=(
        "Shelf Lending MCP Server - lend digital books to friends. Offer or borrow books, "
        "accept or decline offers, return or revoke loans, negotiate renewals, and keep "
        "highlights and notes under the lender's annotation policy. Every tool acts for "
        "the user given as actor_id; resources are scoped to lending://users/{user_id}/."
    ),
)

mcp.add_middleware(MCPInstrumentationMiddleware())

for resource in all_resources:
    uri = resource.get("uri_template", resource.get("uri"))
    logger.debug("Registering resource: %s with URI: %s", resource["name"], uri)
    try:
        mcp.resource(
            uri=uri,
            name=resource["name"],
            description=resource["description"],
            mime_type=resource["mime_type"],
        )(resource["handler"])
    except Exception:
        logger.exception("Failed to register resource %s", resource["name"])
        raise

logger.info("Registered %d resources", len(all_resources))

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


def start_maintenance(ticker: Ticker | None = None) -> Ticker | None:
    """Start the periodic maintenance sweep unless it is disabled."""
    if not config.sweep_enabled:
        logger.info("Maintenance sweep disabled")
        return None

    sweep = MaintenanceSweep(get_db_manager().session_factory, config=config)
    ticker = ticker or ApschedulerTicker(config.sweep_interval_seconds)
    ticker.start(sweep.run_once)
    return ticker


_FASTMCP_TRANSPORTS = {"stdio": "stdio", "streamable_http": "streamable-http"}


def run_server() -> None:
    """Run the MCP server on the configured transport."""
    logger.info(
        "Starting %s v%s on %s transport",
        config.server_name,
        config.server_version,
        config.transport,
    )

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug mode enabled - verbose protocol logging active")
    else:
        logging.getLogger("fastmcp").setLevel(logging.WARNING)
        logging.getLogger("apscheduler").setLevel(logging.WARNING)

    def signal_handler(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s, initiating shutdown...", signum)
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    db_manager = get_db_manager()
    db_manager.init_database()
    if not db_manager.verify_connection():
        logger.error("Database is not reachable at %s", db_manager.database_url)
        sys.exit(1)

    ticker = start_maintenance()
    try:
        logger.info("MCP Server ready and waiting for connections...")
        mcp.run(transport=_FASTMCP_TRANSPORTS[config.transport])
    except Exception:
        logger.exception("Fatal error in MCP server")
        sys.exit(1)
    finally:
        if ticker is not None:
            ticker.stop()
        db_manager.close()
        logger.info("Shutdown complete")


def main() -> None:
    """Entry point for the ``shelf-lending`` console script."""
    try:
        logger.info("=" * 60)
        logger.info("Shelf Lending MCP Server")
        logger.info("Version: %s", config.server_version)
        logger.info("Transport: %s", config.transport)
        logger.info("Debug Mode: %s", config.debug)
        logger.info("=" * 60)

        run_server()

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception:
        logger.exception("Failed to start MCP server")
        sys.exit(1)


if __name__ == "__main__":
    main()
