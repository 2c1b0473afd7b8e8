"""
Request context threaded explicitly through extraction and indexing calls.

There is no ambient/thread-local state: each call receives the context of the
request that caused it and logs through a ContextLogger built from it.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Optional


@dataclass(frozen=True)
class ExtractionContext:
    """Correlation data for one logical request."""
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    locator: Optional[str] = None
    origin: str = "request"   # "request", "index" or "background"

    def child(self, locator: str, origin: Optional[str] = None) -> "ExtractionContext":
        """Context for work spawned on behalf of this request."""
        return replace(self, locator=locator, origin=origin or self.origin)


class ContextLogger(logging.LoggerAdapter):
    """Prefixes messages with the request id and attaches the context as extras."""

    def __init__(self, logger: logging.Logger, context: ExtractionContext):
        super().__init__(logger, {
            "request_id": context.request_id,
            "locator": context.locator,
            "origin": context.origin,
        })

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return f"[{self.extra['request_id']}] {msg}", kwargs


def context_logger(logger: logging.Logger, context: Optional[ExtractionContext]) -> ContextLogger:
    return ContextLogger(logger, context or ExtractionContext())
