"""Causal context propagation through message application properties.

The key scheme is W3C Trace Context (level 1) plus W3C Baggage:

    traceparent  00-<32 hex trace id>-<16 hex span id>-<2 hex flags>
    tracestate   vendor list, only written when non-empty
    baggage      comma separated, percent-encoded key=value pairs

Any consumer that does not use this package must read exactly these keys to
interoperate. Header writes and reads are per key and never raise: failures
go to an error sink (a loguru error log by default) and the key is treated as
absent.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Mapping, MutableMapping, Optional

from loguru import logger
from opentelemetry import baggage as otel_baggage
from opentelemetry import trace
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.context import Context
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.propagators.textmap import Getter, Setter
from opentelemetry.trace import NonRecordingSpan, SpanContext, TraceFlags, TraceState
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from shared.messaging.exceptions import ContextPropagationError

TRACEPARENT_KEY = "traceparent"
TRACESTATE_KEY = "tracestate"
BAGGAGE_KEY = "baggage"
PROPAGATION_KEYS = (TRACEPARENT_KEY, TRACESTATE_KEY, BAGGAGE_KEY)

ErrorSink = Callable[[ContextPropagationError], None]


def _log_propagation_error(error: ContextPropagationError) -> None:
    logger.bind(
        component="messaging",
        event=f"context_{error.operation}_failed",
        key=error.key,
    ).opt(exception=error.cause).error("")


@dataclass(frozen=True)
class CausalContext:
    """Trace id, span id and ordered baggage entries carried across the queue."""

    trace_id: str | None = None
    span_id: str | None = None
    trace_flags: int = int(TraceFlags.SAMPLED)
    trace_state: str = ""
    baggage: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        # Normalized to the form that survives a W3C round trip.
        if self.trace_id:
            object.__setattr__(self, "trace_id", self.trace_id.strip().lower())
        if self.span_id:
            object.__setattr__(self, "span_id", self.span_id.strip().lower())
        if self.trace_state:
            object.__setattr__(
                self, "trace_state", TraceState.from_header([self.trace_state]).to_header()
            )
        entries: Iterable[Any] = self.baggage
        if isinstance(entries, Mapping):
            entries = entries.items()
        normalized: dict[str, str] = {}
        for key, value in entries:
            key = str(key).strip()
            if key:
                normalized[key] = str(value).strip()
        object.__setattr__(self, "baggage", tuple(normalized.items()))

    @classmethod
    def empty(cls) -> "CausalContext":
        return cls()

    @property
    def has_trace(self) -> bool:
        return bool(self.trace_id) and bool(self.span_id)

    @property
    def is_empty(self) -> bool:
        return not self.has_trace and not self.baggage

    def baggage_dict(self) -> dict[str, str]:
        return dict(self.baggage)

    @classmethod
    def from_otel(cls, ctx: Context | None) -> "CausalContext":
        """Snapshot the span context and baggage held by an OpenTelemetry context."""
        span_context = trace.get_current_span(ctx).get_span_context()
        entries = tuple((k, str(v)) for k, v in otel_baggage.get_all(ctx).items())
        if not span_context.is_valid:
            return cls(baggage=entries)
        return cls(
            trace_id=trace.format_trace_id(span_context.trace_id),
            span_id=trace.format_span_id(span_context.span_id),
            trace_flags=int(span_context.trace_flags),
            trace_state=span_context.trace_state.to_header(),
            baggage=entries,
        )

    def to_otel(self, base: Context | None = None) -> Context:
        """Build an OpenTelemetry context carrying this record as a remote parent."""
        ctx = base if base is not None else Context()
        if self.has_trace:
            span_context = SpanContext(
                trace_id=int(self.trace_id, 16),  # type: ignore[arg-type]
                span_id=int(self.span_id, 16),  # type: ignore[arg-type]
                is_remote=True,
                trace_flags=TraceFlags(self.trace_flags),
                trace_state=TraceState.from_header([self.trace_state]) if self.trace_state else None,
            )
            ctx = trace.set_span_in_context(NonRecordingSpan(span_context), ctx)
        for key, value in self.baggage:
            ctx = otel_baggage.set_baggage(key, value, context=ctx)
        return ctx


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return str(value)


class _PropertiesSetter(Setter[MutableMapping[str, Any]]):
    def __init__(self, on_error: ErrorSink) -> None:
        self._on_error = on_error

    def set(self, carrier: MutableMapping[str, Any], key: str, value: str) -> None:
        try:
            carrier[key] = str(value)
        except Exception as exc:
            self._on_error(ContextPropagationError(ContextPropagationError.INJECT, key, exc))


class _PropertiesGetter(Getter[Mapping[str, Any]]):
    def __init__(self, on_error: ErrorSink) -> None:
        self._on_error = on_error

    def get(self, carrier: Mapping[str, Any], key: str) -> Optional[List[str]]:
        try:
            if key not in carrier:
                return []
            value = carrier[key]
            if value is None:
                return []
            return [_as_text(value)]
        except Exception as exc:
            self._on_error(ContextPropagationError(ContextPropagationError.EXTRACT, key, exc))
            return []

    def keys(self, carrier: Mapping[str, Any]) -> List[str]:
        try:
            return [str(k) for k in carrier.keys()]
        except Exception as exc:
            self._on_error(ContextPropagationError(ContextPropagationError.EXTRACT, "*", exc))
            return []


class MessagePropertiesPropagator:
    """Writes and reads `CausalContext` into a flat string-keyed property bag."""

    def __init__(self, on_error: ErrorSink | None = None) -> None:
        sink = on_error or _log_propagation_error
        self._on_error = sink
        self._setter = _PropertiesSetter(sink)
        self._getter = _PropertiesGetter(sink)
        self._propagator = CompositePropagator(
            [TraceContextTextMapPropagator(), W3CBaggagePropagator()]
        )

    @property
    def fields(self) -> set[str]:
        return set(self._propagator.fields)

    def inject(self, context: CausalContext, carrier: MutableMapping[str, Any]) -> None:
        """Replace every propagation key in `carrier` with the values of `context`."""
        for key in PROPAGATION_KEYS:
            try:
                carrier.pop(key, None)
            except Exception as exc:
                self._on_error(ContextPropagationError(ContextPropagationError.INJECT, key, exc))
        self._propagator.inject(carrier, context=context.to_otel(), setter=self._setter)

    def inject_otel(self, ctx: Context, carrier: MutableMapping[str, Any]) -> CausalContext:
        """Inject the span context and baggage of an OpenTelemetry context; returns what was written."""
        causal = CausalContext.from_otel(ctx)
        self.inject(causal, carrier)
        return causal

    def extract(self, carrier: Mapping[str, Any]) -> CausalContext:
        ctx = self._propagator.extract(carrier, context=Context(), getter=self._getter)
        return CausalContext.from_otel(ctx)


__all__ = [
    "BAGGAGE_KEY",
    "CausalContext",
    "ErrorSink",
    "MessagePropertiesPropagator",
    "PROPAGATION_KEYS",
    "TRACEPARENT_KEY",
    "TRACESTATE_KEY",
]
