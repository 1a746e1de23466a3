"""FastMCP middleware that opens one span per MCP message."""

from typing import Any

from fastmcp.server.middleware import Middleware, MiddlewareContext

from . import get_config, logfire


class MCPInstrumentationMiddleware(Middleware):
    """Trace every MCP request, tagging lending calls with the acting user."""

    def __init__(self):
        self.config = get_config()
        self.enabled = self.config.enabled

    async def on_message(self, context: MiddlewareContext, call_next) -> Any:
        if not self.enabled:
            return await call_next(context)

        method = context.method or ""
        operation_type = self._get_operation_type(method)

        with logfire.span(
            "mcp.{operation_type}.{method}",
            operation_type=operation_type,
            method=method,
            mcp_source=getattr(context, "source", "unknown"),
        ) as span:
            message = getattr(context, "message", None)
            if hasattr(message, "name"):
                span.set_attribute("tool.name", message.name)
                arguments = getattr(message, "arguments", None) or {}
                if "actor_id" in arguments:
                    span.set_attribute("lending.actor_id", str(arguments["actor_id"]))
            elif hasattr(message, "uri"):
                span.set_attribute("resource.uri", str(message.uri))

            try:
                result = await call_next(context)
            except Exception as e:
                span.set_attribute("mcp.status", "error")
                span.set_attribute("error.type", type(e).__name__)
                span.set_attribute("error.message", str(e))
                raise

            span.set_attribute("mcp.status", "success")
            return result

    @staticmethod
    def _get_operation_type(method: str) -> str:
        if method.startswith("resources/"):
            return "resource"
        if method.startswith("tools/"):
            return "tool"
        return "system"
