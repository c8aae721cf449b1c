"""Deterministic tool registration primitives."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

ToolResult = dict[str, object]
ToolHandler = Callable[[dict[str, object]], ToolResult | Awaitable[ToolResult]]


@dataclass(slots=True, frozen=True)
class ToolDispatchError(Exception):
    """Represents deterministic tool dispatch failures."""

    code: str
    message: str


@dataclass(slots=True)
class ToolRegistry:
    """In-memory tool registry preserving deterministic insertion order.

    Handlers may be plain functions or coroutine functions; `dispatch`
    awaits whatever they return.
    """

    _handlers: dict[str, ToolHandler] = field(default_factory=dict)

    def register(self, name: str, handler: ToolHandler) -> None:
        """Register a named handler."""
        self._handlers[name] = handler

    def get(self, name: str) -> ToolHandler | None:
        """Return a handler by name."""
        return self._handlers.get(name)

    def names(self) -> tuple[str, ...]:
        """Return registered tool names in deterministic order."""
        return tuple(self._handlers.keys())

    async def dispatch(self, name: str, arguments: dict[str, object]) -> ToolResult:
        """Dispatch to a registered tool by name."""
        handler = self.get(name)
        if handler is None:
            raise ToolDispatchError(code="UNKNOWN_TOOL", message=f"Unknown tool: {name}")
        result = handler(arguments)
        if inspect.isawaitable(result):
            return await result
        return result
