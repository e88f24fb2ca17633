from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional


@dataclass(frozen=True)
class LogContext:
    """Who a log line is about. Every lifecycle and webhook line carries it."""

    workspace_id: Optional[str] = None
    provider: Optional[str] = None
    instance_name: Optional[str] = None
    connection_id: Optional[str] = None
    correlation_id: Optional[str] = None

    def pairs(self) -> Iterator[tuple[str, str]]:
        for key, value in (
            ("workspace", self.workspace_id),
            ("provider", self.provider),
            ("instance", self.instance_name),
            ("connection", self.connection_id),
            ("corr", self.correlation_id),
        ):
            if value:
                yield key, value


def _render(value: Any) -> str:
    s = str(value)
    if not s or any(ch.isspace() for ch in s) or '"' in s:
        return '"' + s.replace('"', '\\"') + '"'
    return s


class Observability:
    """Structured ``event key=value`` lines on top of a stdlib logger."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def debug(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(self._format(event, ctx, fields))

    def info(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.info(self._format(event, ctx, fields))

    def warning(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.warning(self._format(event, ctx, fields))

    def error(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.error(self._format(event, ctx, fields))

    @staticmethod
    def _format(event: str, ctx: Optional[LogContext], fields: Mapping[str, Any]) -> str:
        parts = [event]
        if ctx is not None:
            parts.extend(f"{k}={_render(v)}" for k, v in ctx.pairs())
        # None fields are omitted so optional details don't clutter the line
        parts.extend(f"{k}={_render(v)}" for k, v in fields.items() if v is not None)
        return " ".join(parts)
