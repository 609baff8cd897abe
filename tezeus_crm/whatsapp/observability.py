from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class LogContext:
    workspace_id: Optional[str] = None
    provider: Optional[str] = None
    instance_name: Optional[str] = None
    correlation_id: Optional[str] = None


class Observability:
    def __init__(self, logger: logging.Logger):
        self._logger = logger
        self._counters: Counter[str] = Counter()

    def info(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.info(self._format(event, ctx=ctx, fields=fields))

    def warning(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.warning(self._format(event, ctx=ctx, fields=fields))

    def error(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.error(self._format(event, ctx=ctx, fields=fields))

    def exception(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.exception(self._format(event, ctx=ctx, fields=fields))

    def incr(self, name: str, amount: int = 1) -> None:
        self._counters[name] += amount

    def counters(self) -> dict[str, int]:
        return dict(self._counters)

    def _format(self, event: str, *, ctx: Optional[LogContext], fields: Mapping[str, Any]) -> str:
        parts: list[str] = [event]
        if ctx:
            if ctx.workspace_id:
                parts.append(f"workspace={ctx.workspace_id}")
            if ctx.provider:
                parts.append(f"provider={ctx.provider}")
            if ctx.instance_name:
                parts.append(f"instance={ctx.instance_name}")
            if ctx.correlation_id:
                parts.append(f"corr={ctx.correlation_id}")
        for k, v in fields.items():
            if v is None:
                continue
            parts.append(f"{k}={v}")
        return " ".join(parts)
