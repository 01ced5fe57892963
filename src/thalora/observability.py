"""Observability integration for authentication ceremonies."""

from __future__ import annotations

import json
import logging
import time
from contextlib import ExitStack
from typing import Any, Mapping

import msgspec


class CeremonyObservabilityConfig(msgspec.Struct, frozen=True):
    """Span naming for ceremony operations."""

    span_name: str = "thalora.ceremony"


class ObservabilityConfig(msgspec.Struct, frozen=True):
    """Top-level observability configuration."""

    enabled: bool = True
    opentelemetry_enabled: bool = True
    opentelemetry_tracer: str = "thalora"
    logger_name: str = "thalora.observability"
    ceremony: CeremonyObservabilityConfig = CeremonyObservabilityConfig()


class _ObservationContext:
    __slots__ = ("fields", "stack", "span", "start")

    def __init__(self, *, start: float, stack: ExitStack | None, span: Any | None, fields: Mapping[str, Any]) -> None:
        self.start = start
        self.stack = stack
        self.span = span
        self.fields = dict(fields)

    def close(self, error: BaseException | None = None) -> None:
        if self.stack is None:
            return
        if error is None:
            self.stack.__exit__(None, None, None)
        else:
            self.stack.__exit__(type(error), error, error.__traceback__)


class Observability:
    """Coordinate tracing and structured logging for ceremony operations."""

    def __init__(self, config: ObservabilityConfig | None = None) -> None:
        self.config = config or ObservabilityConfig()
        self._tracer = None
        self._internal_span_kind = None
        self._status_cls = None
        self._status_ok = None
        self._status_error = None
        self._logger = logging.getLogger(self.config.logger_name)
        if self.config.enabled:
            self._prepare_opentelemetry()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def _prepare_opentelemetry(self) -> None:
        if not self.config.opentelemetry_enabled:
            return
        try:
            from opentelemetry import trace  # type: ignore[import-not-found]
        except ImportError:  # pragma: no cover - optional dependency
            return
        self._tracer = trace.get_tracer(self.config.opentelemetry_tracer)
        try:
            from opentelemetry.trace import SpanKind, Status, StatusCode  # type: ignore[import-not-found]
        except ImportError:  # pragma: no cover - optional dependency
            return
        self._internal_span_kind = getattr(SpanKind, "INTERNAL", None)
        self._status_cls = Status
        self._status_ok = getattr(StatusCode, "OK", None)
        self._status_error = getattr(StatusCode, "ERROR", None)

    def _status(self, code: Any, description: str | None = None) -> Any | None:
        if self._status_cls is None or code is None:
            return None
        if description is None:
            return self._status_cls(code)
        return self._status_cls(code, description=description)

    def _log(self, event: str, fields: Mapping[str, Any], *, level: int = logging.INFO) -> None:
        payload: dict[str, Any] = {"event": event}
        for key, value in fields.items():
            if value is not None:
                payload[key] = value
        self._logger.log(level, json.dumps(payload, separators=(",", ":"), default=str))

    def on_ceremony_start(self, kind: str, step: str, **fields: Any) -> _ObservationContext | None:
        if not self.config.enabled:
            return None
        log_fields = {"ceremony": kind, "step": step, **fields}
        stack: ExitStack | None = None
        span = None
        if self._tracer is not None:
            stack = ExitStack()
            span = stack.enter_context(
                self._tracer.start_as_current_span(self.config.ceremony.span_name, kind=self._internal_span_kind)
            )
            span.set_attribute("ceremony.kind", kind)
            span.set_attribute("ceremony.step", step)
        context = _ObservationContext(start=time.perf_counter(), stack=stack, span=span, fields=log_fields)
        self._log("ceremony.start", log_fields)
        return context

    def on_ceremony_success(self, context: _ObservationContext | None, **fields: Any) -> None:
        if context is None:
            return
        duration_ms = (time.perf_counter() - context.start) * 1000.0
        if context.span is not None:
            context.span.set_attribute("ceremony.result", "success")
            status = self._status(self._status_ok)
            if status is not None:
                context.span.set_status(status)
        self._log("ceremony.success", {**context.fields, **fields, "duration_ms": round(duration_ms, 3)})
        context.close()

    def on_ceremony_error(self, context: _ObservationContext | None, error: BaseException, **fields: Any) -> None:
        if context is None:
            return
        reason = getattr(error, "code", type(error).__name__)
        if context.span is not None:
            context.span.set_attribute("ceremony.result", "error")
            context.span.set_attribute("ceremony.error", reason)
            if hasattr(context.span, "record_exception"):
                context.span.record_exception(error)
            status = self._status(self._status_error, reason)
            if status is not None:
                context.span.set_status(status)
        self._log(
            "ceremony.error",
            {**context.fields, **fields, "error": reason, "message": str(error)},
            level=logging.WARNING,
        )
        context.close(error)


__all__ = ["CeremonyObservabilityConfig", "Observability", "ObservabilityConfig"]
