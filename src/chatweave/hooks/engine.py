"""Priority-ordered action/filter dispatcher used across the chat pipeline.

The engine decouples producers of chat lifecycle events from their consumers
(analytics, moderation, plugins). Two kinds of callbacks are supported:

* **actions** are fire-and-forget observers. A failing action is logged and
  counted, and the remaining callbacks still run.
* **filters** thread a value through every callback, each return feeding the
  next. A failing filter aborts the chain and the exception propagates.

Callbacks for one name always run sequentially in ascending priority order,
ties broken by registration order. Names containing ``*`` register wildcard
callbacks that match any dispatched name by glob.
"""

from __future__ import annotations

import inspect
import itertools
import logging
import re
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Literal

LOGGER = logging.getLogger(__name__)

HookKind = Literal["action", "filter"]
HookCallback = Callable[..., Any]
Disposer = Callable[[], None]

DEFAULT_PRIORITY = 10

# High-frequency hooks that should not log each dispatch
_QUIET_HOOKS: frozenset[str] = frozenset(
    {
        "ai.chat.stream:action:delta",
        "ai.chat.stream:action:reasoning",
        "ai.chat.background:action:update",
    }
)


@dataclass(slots=True)
class HookRegistration:
    """A single callback registered under a hook name or pattern.

    Attributes:
        name: Hook name (or ``*`` pattern) the callback was registered with.
        kind: Either ``"action"`` or ``"filter"``.
        priority: Lower values run earlier.
        callback: The callable invoked on dispatch.
        accepted_args: Maximum number of positional arguments forwarded, or
            ``None`` to forward everything. Inferred from the callback
            signature when not given at registration.
        order: Monotonic registration counter used as a tiebreaker.
    """

    name: str
    kind: HookKind
    priority: int
    callback: HookCallback
    accepted_args: int | None = None
    order: int = 0

    @property
    def is_wildcard(self) -> bool:
        return "*" in self.name

    def matches(self, name: str) -> bool:
        if self.is_wildcard:
            return _compile_pattern(self.name).fullmatch(name) is not None
        return self.name == name

    def forward(self, args: tuple[Any, ...]) -> tuple[Any, ...]:
        if self.accepted_args is None:
            return args
        return args[: max(0, self.accepted_args)]


@dataclass(slots=True)
class HookDiagnostics:
    """Best-effort timing and failure counters for tooling."""

    timings: dict[str, list[float]] = field(default_factory=dict)
    errors: dict[str, int] = field(default_factory=dict)
    _owner: "HookEngine | None" = None

    def record_timing(self, name: str, elapsed_ms: float) -> None:
        self.timings.setdefault(name, []).append(elapsed_ms)

    def record_error(self, name: str) -> None:
        self.errors[name] = self.errors.get(name, 0) + 1

    def error_count(self, name: str) -> int:
        return self.errors.get(name, 0)

    def callbacks(self, kind: HookKind | None = None) -> int:
        """Return the number of registered callbacks, optionally by kind."""

        if self._owner is None:
            return 0
        return self._owner._count(kind)

    def reset(self) -> None:
        self.timings.clear()
        self.errors.clear()


class HookEngine:
    """Registry and dispatcher for actions and filters.

    Instances are cheap and fully isolated; the application object owns one
    and hands it to every component that emits or consumes hooks.
    """

    def __init__(self) -> None:
        self._actions: dict[str, list[HookRegistration]] = {}
        self._filters: dict[str, list[HookRegistration]] = {}
        self._counter = itertools.count(1)
        self._priority_stack: list[list[int]] = []
        self.diagnostics = HookDiagnostics(_owner=self)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def add_action(
        self,
        name: str,
        fn: HookCallback,
        priority: int = DEFAULT_PRIORITY,
        accepted_args: int | None = None,
    ) -> None:
        self._add(self._actions, "action", name, fn, priority, accepted_args)

    def add_filter(
        self,
        name: str,
        fn: HookCallback,
        priority: int = DEFAULT_PRIORITY,
        accepted_args: int | None = None,
    ) -> None:
        self._add(self._filters, "filter", name, fn, priority, accepted_args)

    def remove_action(self, name: str, fn: HookCallback, priority: int | None = None) -> None:
        self._remove(self._actions, name, fn, priority)

    def remove_filter(self, name: str, fn: HookCallback, priority: int | None = None) -> None:
        self._remove(self._filters, name, fn, priority)

    def remove_all_callbacks(self, priority: int | None = None) -> None:
        """Drop every registration, or only those at ``priority``."""

        for bucket in (self._actions, self._filters):
            if priority is None:
                bucket.clear()
                continue
            for name in list(bucket):
                kept = [entry for entry in bucket[name] if entry.priority != priority]
                if kept:
                    bucket[name] = kept
                else:
                    del bucket[name]

    def has_action(self, name: str | None = None, fn: HookCallback | None = None) -> bool | int:
        return self._has(self._actions, name, fn)

    def has_filter(self, name: str | None = None, fn: HookCallback | None = None) -> bool | int:
        return self._has(self._filters, name, fn)

    def on(
        self,
        name: str,
        fn: HookCallback,
        *,
        kind: HookKind = "action",
        priority: int = DEFAULT_PRIORITY,
    ) -> Disposer:
        """Register ``fn`` and return a closure that unregisters it."""

        if kind == "filter":
            self.add_filter(name, fn, priority)
            return lambda: self.remove_filter(name, fn, priority)
        self.add_action(name, fn, priority)
        return lambda: self.remove_action(name, fn, priority)

    def off(self, disposer: Disposer) -> None:
        try:
            disposer()
        except Exception:
            LOGGER.debug("Hook disposer failed", exc_info=True)

    def once_action(
        self,
        name: str,
        fn: HookCallback,
        priority: int = DEFAULT_PRIORITY,
        accepted_args: int | None = None,
    ) -> Disposer:
        """Register an action that runs at most once.

        The wrapper claims itself before calling ``fn`` so that two dispatches
        which snapshotted the callback list in the same tick cannot both run it.
        Arguments are trimmed to what ``fn`` accepts, as with :meth:`add_action`.
        """

        fired = False
        accepted = accepted_args if accepted_args is not None else _infer_accepted_args(fn)

        def wrapper(*args: Any) -> Any:
            nonlocal fired
            if fired:
                return None
            fired = True
            self.remove_action(name, wrapper, priority)
            if accepted is not None:
                args = args[: max(0, accepted)]
            return fn(*args)

        self.add_action(name, wrapper, priority)
        return lambda: self.remove_action(name, wrapper, priority)

    def current_priority(self) -> int | Literal[False]:
        """Return the priority of the callback currently executing, if any."""

        if not self._priority_stack:
            return False
        return self._priority_stack[-1][0]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def do_action(self, name: str, *args: Any) -> None:
        callbacks = self._matching(self._actions, name)
        if not callbacks:
            return
        self._log_dispatch("action", name, len(callbacks))
        slot = self._push_priority(callbacks[0].priority)
        try:
            for entry in callbacks:
                slot[0] = entry.priority
                started = time.perf_counter()
                try:
                    result = entry.callback(*entry.forward(args))
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    self.diagnostics.record_error(name)
                    LOGGER.exception(
                        "Action %s raised in hook %s", _callback_name(entry.callback), name
                    )
                finally:
                    self._record_timing(name, started)
        finally:
            self._pop_priority(slot)

    def do_action_sync(self, name: str, *args: Any) -> None:
        callbacks = self._matching(self._actions, name)
        if not callbacks:
            return
        self._log_dispatch("action", name, len(callbacks))
        slot = self._push_priority(callbacks[0].priority)
        try:
            for entry in callbacks:
                slot[0] = entry.priority
                started = time.perf_counter()
                try:
                    result = entry.callback(*entry.forward(args))
                    _reject_awaitable(result, entry, name)
                except Exception:
                    self.diagnostics.record_error(name)
                    LOGGER.exception(
                        "Action %s raised in hook %s", _callback_name(entry.callback), name
                    )
                finally:
                    self._record_timing(name, started)
        finally:
            self._pop_priority(slot)

    async def apply_filters(self, name: str, value: Any, *args: Any) -> Any:
        callbacks = self._matching(self._filters, name)
        if not callbacks:
            return value
        self._log_dispatch("filter", name, len(callbacks))
        slot = self._push_priority(callbacks[0].priority)
        try:
            for entry in callbacks:
                slot[0] = entry.priority
                started = time.perf_counter()
                try:
                    result = entry.callback(*entry.forward((value, *args)))
                    if inspect.isawaitable(result):
                        result = await result
                except Exception:
                    self.diagnostics.record_error(name)
                    LOGGER.warning(
                        "Filter %s raised in hook %s; aborting chain",
                        _callback_name(entry.callback),
                        name,
                    )
                    raise
                finally:
                    self._record_timing(name, started)
                value = result
            return value
        finally:
            self._pop_priority(slot)

    def apply_filters_sync(self, name: str, value: Any, *args: Any) -> Any:
        callbacks = self._matching(self._filters, name)
        if not callbacks:
            return value
        self._log_dispatch("filter", name, len(callbacks))
        slot = self._push_priority(callbacks[0].priority)
        try:
            for entry in callbacks:
                slot[0] = entry.priority
                started = time.perf_counter()
                try:
                    result = entry.callback(*entry.forward((value, *args)))
                    _reject_awaitable(result, entry, name)
                except Exception:
                    self.diagnostics.record_error(name)
                    LOGGER.warning(
                        "Filter %s raised in hook %s; aborting chain",
                        _callback_name(entry.callback),
                        name,
                    )
                    raise
                finally:
                    self._record_timing(name, started)
                value = result
            return value
        finally:
            self._pop_priority(slot)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _add(
        self,
        bucket: dict[str, list[HookRegistration]],
        kind: HookKind,
        name: str,
        fn: HookCallback,
        priority: int,
        accepted_args: int | None,
    ) -> None:
        if not name:
            raise ValueError("Hook name is required")
        if not callable(fn):
            raise TypeError(f"Hook callback for {name!r} must be callable")
        entries = bucket.setdefault(name, [])
        entry = HookRegistration(
            name=name,
            kind=kind,
            priority=int(priority),
            callback=fn,
            accepted_args=accepted_args if accepted_args is not None else _infer_accepted_args(fn),
            order=next(self._counter),
        )
        for index, existing in enumerate(entries):
            if existing.callback == fn and existing.priority == entry.priority:
                # Replacement keeps the original slot in the tie order
                entry.order = existing.order
                entries[index] = entry
                return
        entries.append(entry)

    def _remove(
        self,
        bucket: dict[str, list[HookRegistration]],
        name: str,
        fn: HookCallback,
        priority: int | None,
    ) -> None:
        entries = bucket.get(name)
        if not entries:
            return
        kept = [
            entry
            for entry in entries
            if not (entry.callback == fn and (priority is None or entry.priority == priority))
        ]
        if kept:
            bucket[name] = kept
        else:
            del bucket[name]

    def _has(
        self,
        bucket: dict[str, list[HookRegistration]],
        name: str | None,
        fn: HookCallback | None,
    ) -> bool | int:
        if name is None:
            return any(bucket.values())
        if fn is not None:
            for entry in bucket.get(name, ()):
                if entry.callback == fn:
                    return entry.priority
            return False
        return bool(self._matching(bucket, name))

    def _matching(self, bucket: dict[str, list[HookRegistration]], name: str) -> list[HookRegistration]:
        matches = list(bucket.get(name, ()))
        for pattern, entries in bucket.items():
            if pattern != name and "*" in pattern and _compile_pattern(pattern).fullmatch(name):
                matches.extend(entries)
        matches.sort(key=lambda entry: (entry.priority, entry.order))
        return matches

    def _count(self, kind: HookKind | None) -> int:
        buckets = {"action": self._actions, "filter": self._filters}
        selected = [buckets[kind]] if kind else list(buckets.values())
        return sum(len(entries) for bucket in selected for entries in bucket.values())

    def _push_priority(self, priority: int) -> list[int]:
        slot = [priority]
        self._priority_stack.append(slot)
        return slot

    def _pop_priority(self, slot: list[int]) -> None:
        for index in range(len(self._priority_stack) - 1, -1, -1):
            if self._priority_stack[index] is slot:
                del self._priority_stack[index]
                return

    def _record_timing(self, name: str, started: float) -> None:
        self.diagnostics.record_timing(name, (time.perf_counter() - started) * 1000.0)

    @staticmethod
    def _log_dispatch(kind: str, name: str, count: int) -> None:
        if name in _QUIET_HOOKS:
            return
        LOGGER.debug("Dispatching %s %s to %d callback(s)", kind, name, count)


@lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> re.Pattern[str]:
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


def _infer_accepted_args(fn: HookCallback) -> int | None:
    """Count the positional parameters ``fn`` can take; ``None`` when unbounded."""

    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return None
    count = 0
    for parameter in signature.parameters.values():
        if parameter.kind is inspect.Parameter.VAR_POSITIONAL:
            return None
        if parameter.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            count += 1
    return count


def _reject_awaitable(result: Any, entry: HookRegistration, name: str) -> None:
    if inspect.isawaitable(result):
        close = getattr(result, "close", None)
        if callable(close):
            close()
        raise TypeError(
            f"{entry.kind.capitalize()} {_callback_name(entry.callback)} on {name!r} is async; "
            "dispatch it with the awaitable API"
        )


def _callback_name(callback: HookCallback) -> str:
    if hasattr(callback, "__self__") and hasattr(callback, "__func__"):
        return f"{type(callback.__self__).__name__}.{callback.__func__.__name__}"
    return getattr(callback, "__qualname__", None) or getattr(callback, "__name__", None) or repr(callback)


__all__ = [
    "DEFAULT_PRIORITY",
    "Disposer",
    "HookCallback",
    "HookDiagnostics",
    "HookEngine",
    "HookKind",
    "HookRegistration",
]
