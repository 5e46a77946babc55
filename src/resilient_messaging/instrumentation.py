"""Instrumentation hooks around message routing and dead-letter monitoring.

The core runs two instrumented operations:

- ``message.route``: one routing decision; the continuation returns the
  :class:`~resilient_messaging.router.Outcome`.
- ``dead_letter.monitor``: one occupancy check; the continuation returns
  the number of unreplayed dead-letter records.

A hook wraps the operation like middleware: it receives the operation name,
the attribute mapping (message id, source destination, correlation id, ...)
and a zero-argument continuation, and must return the continuation's result.
"""

from __future__ import annotations

import fnmatch
import functools
from contextvars import ContextVar
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

ROUTE_OPERATION = "message.route"
MONITOR_OPERATION = "dead_letter.monitor"
OPERATIONS: tuple[str, ...] = (ROUTE_OPERATION, MONITOR_OPERATION)


@runtime_checkable
class InstrumentationHook(Protocol):
    """Wraps one instrumented operation (metrics, structured logs, tracing)."""

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any: ...


@dataclass(frozen=True, eq=False)
class HookRegistration:
    """A hook, its nesting priority and the operation patterns it covers.

    ``operations`` holds shell-style patterns (``"dead_letter.*"``); an
    empty tuple covers every operation.
    """

    hook: InstrumentationHook
    priority: int = 0
    operations: tuple[str, ...] = ()

    def covers(self, operation: str) -> bool:
        return not self.operations or any(
            fnmatch.fnmatchcase(operation, pattern) for pattern in self.operations
        )


class HookRegistry:
    """Hooks nested by priority: the lowest priority is the outermost layer.

    The chain for an operation is resolved on first use and cached until the
    registrations change, so routing a message costs a dict lookup rather
    than a pattern match per hook. Hooks with equal priority nest in
    registration order.
    """

    def __init__(self) -> None:
        self._registrations: list[HookRegistration] = []
        self._chains: dict[str, tuple[InstrumentationHook, ...]] = {}

    def register(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        operations: Iterable[str] | None = None,
    ) -> HookRegistration:
        registration = HookRegistration(hook, priority, tuple(operations or ()))
        self._registrations.append(registration)
        self._registrations.sort(key=lambda r: r.priority)
        self._chains.clear()
        return registration

    def unregister(self, registration: HookRegistration) -> None:
        self._registrations = [r for r in self._registrations if r is not registration]
        self._chains.clear()

    def clear(self) -> None:
        self._registrations.clear()
        self._chains.clear()

    def chain(self, operation: str) -> tuple[InstrumentationHook, ...]:
        """Hooks covering *operation*, outermost first."""
        hooks = self._chains.get(operation)
        if hooks is None:
            hooks = tuple(r.hook for r in self._registrations if r.covers(operation))
            self._chains[operation] = hooks
        return hooks

    async def execute_all(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run *next_handler* inside every hook covering *operation*."""
        call = next_handler
        for hook in reversed(self.chain(operation)):
            call = functools.partial(hook, operation, attributes, call)
        return await call()


_current_registry: ContextVar[HookRegistry | None] = ContextVar(
    "resilient_messaging_hooks", default=None
)


def get_hook_registry() -> HookRegistry:
    """Registry used when a router or monitor is built without one.

    Each context gets its own registry on first access, so concurrently
    running tests never see each other's hooks.
    """
    registry = _current_registry.get()
    if registry is None:
        registry = HookRegistry()
        _current_registry.set(registry)
    return registry


def set_hook_registry(registry: HookRegistry) -> None:
    _current_registry.set(registry)
