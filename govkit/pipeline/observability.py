"""
govkit Observability

Structured logging and stage tracing for pipeline runs. Every log line
carries the id of the migration being driven, its trace id and the stage it
was in, so one grep recovers a migration's whole history across prepare,
enact, poll and verify.

Architecture:
    Runner.run_one
        └── tracer.trace(migration_id)      one trace per migration
              ├── span "migration"           stage the run started from
              │     ├── span "prepare"       stage PENDING
              │     ├── span "enact"         stage PREPARED, proposal id
              │     ├── span "poll"          stage AWAITING, one event per poll
              │     └── span "verify"        stage APPLIED, one event per check
              └── log lines                  correlation_id / trace_id / stage

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

# The migration id doubles as the correlation id.
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)
trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trace_id", default=""
)
span_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "span_id", default=""
)
stage_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "stage", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class PipelineLayer(Enum):
    """Pipeline layers, used to name loggers."""
    VARIABLES = "variables"
    ENCODING = "encoding"
    PORTS = "ports"
    MIGRATION = "migration"
    RUNNER = "runner"
    CONFIG = "config"


@dataclass
class LogEvent:
    """One JSON log line."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    trace_id: str = ""
    span_id: str = ""
    stage: str = ""
    layer: str = ""
    operation: str = ""
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_json(self) -> str:
        """Serialize, leaving out empty fields."""
        d = {k: v for k, v in asdict(self).items() if v not in (None, "", {})}
        return json.dumps(d, default=str)


# =============================================================================
# TRACING
# =============================================================================

@dataclass
class SpanEvent:
    name: str
    timestamp: str
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Span:
    """
    One stage of one migration run.

    ``stage`` is the MigrationStage the migration was in when the span
    opened; ``error`` holds ``"<ExceptionType>: <message>"`` if the stage
    raised.
    """
    name: str
    trace_id: str
    span_id: str
    migration_id: str = ""
    stage: str = ""
    parent_span_id: str = ""
    start_time: float = field(default_factory=time.monotonic)
    end_time: Optional[float] = None
    error: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    events: List[SpanEvent] = field(default_factory=list)

    def record_event(self, event_name: str, **attributes: Any) -> None:
        self.events.append(SpanEvent(
            name=event_name,
            timestamp=datetime.now(timezone.utc).isoformat(),
            attributes=attributes,
        ))

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def duration_ms(self) -> float:
        end = self.end_time if self.end_time is not None else time.monotonic()
        return (end - self.start_time) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "migration_id": self.migration_id,
            "stage": self.stage,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "duration_ms": round(self.duration_ms, 2),
            "error": self.error,
            "attributes": self.attributes,
            "events": [asdict(e) for e in self.events],
        }


class Tracer:
    """
    Records a trace per migration and a span per stage.

    A disabled tracer still scopes correlation and trace ids, so log lines
    stay attributable, but hands nothing to its exporters.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._exporters: List[Callable[[Span], None]] = []

    def add_exporter(self, exporter: Callable[[Span], None]) -> None:
        self._exporters.append(exporter)

    @contextmanager
    def trace(self, migration_id: str) -> Iterator[str]:
        """Scope a fresh trace id and the migration's correlation id."""
        trace_id = uuid.uuid4().hex
        corr_token = correlation_id_var.set(migration_id)
        trace_token = trace_id_var.set(trace_id)
        try:
            yield trace_id
        finally:
            trace_id_var.reset(trace_token)
            correlation_id_var.reset(corr_token)

    @contextmanager
    def span(self, name: str, stage: str = "", **attributes: Any) -> Iterator[Span]:
        span = Span(
            name=name,
            trace_id=trace_id_var.get(),
            span_id=uuid.uuid4().hex[:16],
            migration_id=correlation_id_var.get(),
            stage=stage or stage_var.get(),
            parent_span_id=span_id_var.get(),
            attributes=dict(attributes),
        )
        span_token = span_id_var.set(span.span_id)
        stage_token = stage_var.set(span.stage)
        try:
            yield span
        except Exception as e:
            span.error = f"{type(e).__name__}: {e}"
            raise
        finally:
            span.end_time = time.monotonic()
            stage_var.reset(stage_token)
            span_id_var.reset(span_token)
            if self.enabled:
                for exporter in self._exporters:
                    exporter(span)


# =============================================================================
# LOGGING
# =============================================================================

class StructuredHandler(logging.Handler):
    """Writes each record as one JSON line, stamped with the run context."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                trace_id=trace_id_var.get(),
                span_id=span_id_var.get(),
                stage=stage_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )
            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            stream = self.stream or sys.stderr
            stream.write(event.to_json() + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


class PipelineLogger:
    """
    Logger for one pipeline component, named ``govkit.<layer>.<name>``.

    Keyword arguments other than ``operation``, ``error_code`` and
    ``exc_info`` land in the event's ``context``.
    """

    def __init__(
        self,
        name: str,
        layer: PipelineLayer,
        level: Optional[LogLevel] = None,
    ):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"govkit.{layer.value}.{name}")
        if level is not None:
            self._logger.setLevel(getattr(logging, level.value.upper()))
        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler())

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, **kwargs)


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str:
    return correlation_id_var.get()


_tracer: Optional[Tracer] = None


def get_tracer(config: Any = None) -> Tracer:
    """
    The process tracer, or a disabled one when
    ``observability.enable_tracing`` is off.
    """
    global _tracer
    from govkit.pipeline.config import get_config
    cfg = config or get_config()
    if not cfg.observability.enable_tracing.get():
        return Tracer(enabled=False)
    if _tracer is None:
        _tracer = Tracer()
    return _tracer


def get_logger(name: str, layer: PipelineLayer) -> PipelineLogger:
    """Get a logger for a pipeline component at the configured level."""
    from govkit.pipeline.config import get_config
    level = LogLevel(get_config().observability.log_level.get())
    return PipelineLogger(name, layer, level)
