"""FastMCP server exposing ICD-11, LOINC, RxNorm, MeSH and SNOMED CT tools.

Every operation in the registry becomes an MCP tool of the same name.
Upstream failures are reported to the client as tool errors carrying the
structured error code.
"""

import asyncio
import functools
import logging
import os
import sys

from dotenv import load_dotenv
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from terminology_mcp_server.config import GatewayConfig
from terminology_mcp_server.errors import TerminologyApiError
from terminology_mcp_server.gateway import TerminologyGateway
from terminology_mcp_server.operations import (
    ArgumentError,
    Handler,
    OperationRegistry,
    build_registry,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "Medical Terminologies Server"


def _as_tool(handler: Handler) -> Handler:
    """Report governed upstream failures as MCP tool errors."""

    @functools.wraps(handler)
    async def tool(*args, **kwargs):
        try:
            return await handler(*args, **kwargs)
        except TerminologyApiError as exc:
            raise ToolError(f"{exc.code.value}: {exc.message}") from exc
        except ArgumentError as exc:
            raise ToolError(f"VALIDATION_ERROR: {exc}") from exc

    return tool


def create_server(registry: OperationRegistry) -> FastMCP:
    """Register every operation in ``registry`` as a FastMCP tool."""
    mcp = FastMCP(SERVER_NAME)
    for operation in registry.operations:
        mcp.tool(name=operation.name, description=operation.description)(
            _as_tool(operation.handler)
        )
    return mcp


async def run(transport: str = "stdio") -> None:
    """Build the gateway from the environment and serve until shutdown."""
    gateway = TerminologyGateway.from_config(GatewayConfig.from_env())
    gateway.start()
    registry = build_registry(gateway)
    mcp = create_server(registry)
    logger.info("Starting %s with %d tools", SERVER_NAME, len(registry.operations))
    try:
        await mcp.run_async(transport=transport)
    finally:
        await gateway.aclose()


def main() -> None:
    # Load .env from the current working directory so WHO credentials are set.
    load_dotenv()
    # stdout carries the MCP stdio protocol; logs go to stderr.
    logging.basicConfig(
        stream=sys.stderr,
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run())


if __name__ == "__main__":
    main()
