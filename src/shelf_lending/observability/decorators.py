"""Decorators for tracing MCP tools and resources."""

import functools
from collections.abc import Callable
from datetime import datetime
from typing import Any

import logfire


def trace_tool(tool_name: str):
    """Decorator to trace MCP tool execution."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(arguments: dict[str, Any], *args, **kwargs):
            with logfire.span(
                "tool.execution.{tool_name}",
                tool_name=tool_name,
                tool_category=_categorize_tool(tool_name),
            ) as span:
                start_time = datetime.now()
                _add_attributes(span, "input", arguments)

                result = await func(arguments, *args, **kwargs)

                is_error = bool(result.get("isError")) if isinstance(result, dict) else False
                span.set_attribute("tool.success", not is_error)
                if is_error and "error" in result:
                    span.set_attribute("tool.error_code", result["error"].get("code"))
                span.set_attribute(
                    "tool.duration_ms", (datetime.now() - start_time).total_seconds() * 1000
                )
                return result

        return wrapper

    return decorator


def trace_resource(resource_type: str):
    """Lightweight decorator for resource reads."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            with logfire.span(
                "resource.read.{resource_type}",
                resource_type=resource_type,
            ) as span:
                _add_attributes(span, "params", kwargs)
                result = await func(*args, **kwargs)

                if isinstance(result, dict) and isinstance(result.get("items"), list):
                    span.set_attribute("result.item_count", len(result["items"]))

                return result

        return wrapper

    return decorator


def _categorize_tool(tool_name: str) -> str:
    """Group tools for span filtering."""
    if "renewal" in tool_name:
        return "renewal"
    if "highlight" in tool_name or "note" in tool_name:
        return "annotation"
    if "loan" in tool_name or "borrow" in tool_name:
        return "loan"
    if "sweep" in tool_name:
        return "maintenance"
    return "general"


def _add_attributes(span, prefix: str, data: dict):
    """Copy scalar arguments onto the span."""
    for key, value in data.items():
        if isinstance(value, str | int | float | bool):
            span.set_attribute(f"{prefix}.{key}", value)
