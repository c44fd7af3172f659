"""Kind-specific execution handlers.

A handler is an async callable ``handler(execution_id, payload)`` returning a
dict ``{"ok": True, "output": ...}`` or ``{"ok": False, "error": "..."}``.
Raising is treated the same as returning ``ok=False``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Handler = Callable[[str, Dict[str, Any]], Awaitable[Any]]


@dataclass
class HandlerResult:
    ok: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "HandlerResult":
        if isinstance(raw, HandlerResult):
            return raw
        if isinstance(raw, dict):
            if raw.get("ok"):
                output = raw.get("output")
                if output is None:
                    output = {}
                return cls(ok=True, output=output if isinstance(output, dict) else {"value": output})
            return cls(ok=False, error=str(raw.get("error") or "handler reported failure"))
        return cls(ok=False, error="handler returned %s, expected dict" % type(raw).__name__)


class HandlerRegistry:
    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, kind: str, fn: Optional[Handler] = None):
        """Bind ``fn`` to ``kind``; usable as ``@registry.register("kind")``."""
        if fn is None:
            def decorator(f):
                self._handlers[kind] = f
                return f
            return decorator
        self._handlers[kind] = fn
        return fn

    def kinds(self):
        return sorted(self._handlers)

    def __contains__(self, kind: str) -> bool:
        return kind in self._handlers

    async def run(self, kind: str, execution_id: str, payload: Dict[str, Any]) -> HandlerResult:
        fn = self._handlers.get(kind)
        if fn is None:
            return HandlerResult(ok=False, error="no handler for kind: %s" % kind)
        try:
            raw = await fn(execution_id, payload)
        except Exception as e:
            logger.exception("handler %s raised for execution %s", kind, execution_id)
            return HandlerResult(ok=False, error=str(e) or type(e).__name__)
        return HandlerResult.from_raw(raw)
