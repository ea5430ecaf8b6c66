from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Iterator

import pytest
from opentelemetry import baggage as otel_baggage
from opentelemetry import trace

from shared.messaging.exceptions import ContextPropagationError
from shared.messaging.propagation import (
    BAGGAGE_KEY,
    TRACEPARENT_KEY,
    TRACESTATE_KEY,
    CausalContext,
    MessagePropertiesPropagator,
)

TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
SPAN_ID = "00f067aa0ba902b7"
TRACEPARENT = f"00-{TRACE_ID}-{SPAN_ID}-01"


class _RejectingProperties(dict):
    """Carrier that refuses writes to some keys."""

    def __init__(self, rejected: set[str]) -> None:
        super().__init__()
        self._rejected = rejected

    def __setitem__(self, key: str, value: Any) -> None:
        if key in self._rejected:
            raise TypeError(f"property {key} is read-only")
        super().__setitem__(key, value)


class _ExplodingProperties(Mapping):
    """Carrier whose reads fail for some keys."""

    def __init__(self, data: dict[str, Any], broken: set[str]) -> None:
        self._data = data
        self._broken = broken

    def __getitem__(self, key: str) -> Any:
        if key in self._broken:
            raise KeyError(f"cannot read {key}")
        return self._data[key]

    def __contains__(self, key: object) -> bool:
        return key in self._data or key in self._broken

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


def _collecting_propagator() -> tuple[MessagePropertiesPropagator, list[ContextPropagationError]]:
    errors: list[ContextPropagationError] = []
    return MessagePropertiesPropagator(on_error=errors.append), errors


def test_inject_then_extract_preserves_trace_and_baggage():
    propagator, errors = _collecting_propagator()
    original = CausalContext(
        trace_id=TRACE_ID,
        span_id=SPAN_ID,
        baggage={"tenant": "acme", "user": "42"},
    )
    carrier: dict[str, Any] = {}

    propagator.inject(original, carrier)
    extracted = propagator.extract(carrier)

    assert extracted == original
    assert extracted.baggage == (("tenant", "acme"), ("user", "42"))
    assert errors == []


def test_injected_properties_use_w3c_keys_and_string_values():
    propagator, _ = _collecting_propagator()
    carrier: dict[str, Any] = {}
    propagator.inject(
        CausalContext(trace_id=TRACE_ID, span_id=SPAN_ID, trace_state="vendor=abc", baggage={"k": "v"}),
        carrier,
    )

    assert carrier[TRACEPARENT_KEY] == TRACEPARENT
    assert carrier[TRACESTATE_KEY] == "vendor=abc"
    assert carrier[BAGGAGE_KEY] == "k=v"
    assert all(isinstance(v, str) for v in carrier.values())


def test_reinjection_overwrites_previous_values():
    propagator, errors = _collecting_propagator()
    carrier: dict[str, Any] = {"unrelated": "kept"}
    propagator.inject(
        CausalContext(trace_id=TRACE_ID, span_id=SPAN_ID, trace_state="vendor=abc", baggage={"tenant": "acme"}),
        carrier,
    )
    other_span = "1111111111111111"
    propagator.inject(CausalContext(trace_id=TRACE_ID, span_id=other_span), carrier)

    assert carrier == {"unrelated": "kept", TRACEPARENT_KEY: f"00-{TRACE_ID}-{other_span}-01"}
    assert propagator.extract(carrier) == CausalContext(trace_id=TRACE_ID, span_id=other_span)
    assert errors == []


def test_injecting_empty_context_clears_stale_keys():
    propagator, _ = _collecting_propagator()
    carrier: dict[str, Any] = {
        TRACEPARENT_KEY: TRACEPARENT,
        TRACESTATE_KEY: "vendor=old",
        BAGGAGE_KEY: "tenant=old",
    }

    propagator.inject(CausalContext.empty(), carrier)

    assert carrier == {}


@pytest.mark.parametrize(
    "given, expected",
    [
        ({"tenant": " acme "}, (("tenant", "acme"),)),
        ({" tenant\t": "acme"}, (("tenant", "acme"),)),
        ({"filter": "a=b,c;d"}, (("filter", "a=b,c;d"),)),
        ({"cidade": "São Paulo"}, (("cidade", "São Paulo"),)),
        ({"": "dropped", "tenant": "acme"}, (("tenant", "acme"),)),
    ],
)
def test_baggage_round_trips_after_normalization(given, expected):
    propagator, errors = _collecting_propagator()
    original = CausalContext(trace_id=TRACE_ID, span_id=SPAN_ID, baggage=given)
    carrier: dict[str, Any] = {}

    propagator.inject(original, carrier)

    assert original.baggage == expected
    assert propagator.extract(carrier) == original
    assert errors == []


def test_uppercase_ids_are_normalized_and_round_trip():
    propagator, _ = _collecting_propagator()
    original = CausalContext(trace_id=TRACE_ID.upper(), span_id=SPAN_ID.upper())
    carrier: dict[str, Any] = {}

    propagator.inject(original, carrier)

    assert original.trace_id == TRACE_ID
    assert original.span_id == SPAN_ID
    assert carrier[TRACEPARENT_KEY] == TRACEPARENT
    assert propagator.extract(carrier) == original


def test_empty_context_writes_nothing():
    propagator, errors = _collecting_propagator()
    carrier: dict[str, Any] = {}
    propagator.inject(CausalContext.empty(), carrier)

    assert carrier == {}
    assert errors == []


def test_failed_key_write_is_reported_and_other_keys_still_written():
    propagator, errors = _collecting_propagator()
    carrier = _RejectingProperties({TRACEPARENT_KEY})

    propagator.inject(
        CausalContext(trace_id=TRACE_ID, span_id=SPAN_ID, baggage={"tenant": "acme"}),
        carrier,
    )

    assert TRACEPARENT_KEY not in carrier
    assert carrier[BAGGAGE_KEY] == "tenant=acme"
    assert len(errors) == 1
    assert errors[0].operation == ContextPropagationError.INJECT
    assert errors[0].key == TRACEPARENT_KEY
    assert isinstance(errors[0].cause, TypeError)


def test_extract_absent_keys_returns_empty_context():
    propagator, errors = _collecting_propagator()

    extracted = propagator.extract({"unrelated": "x"})

    assert extracted.is_empty
    assert extracted == CausalContext.empty()
    assert errors == []


def test_extract_malformed_traceparent_keeps_baggage():
    propagator, _ = _collecting_propagator()

    extracted = propagator.extract({TRACEPARENT_KEY: "not-a-traceparent", BAGGAGE_KEY: "tenant=acme"})

    assert not extracted.has_trace
    assert extracted.baggage_dict() == {"tenant": "acme"}


def test_extract_accepts_loosely_typed_values():
    propagator, errors = _collecting_propagator()

    extracted = propagator.extract({TRACEPARENT_KEY: TRACEPARENT.encode("utf-8"), BAGGAGE_KEY: None})

    assert extracted.trace_id == TRACE_ID
    assert extracted.span_id == SPAN_ID
    assert extracted.baggage == ()
    assert errors == []


def test_failed_key_read_is_reported_and_treated_as_absent():
    propagator, errors = _collecting_propagator()
    carrier = _ExplodingProperties({BAGGAGE_KEY: "tenant=acme"}, broken={TRACEPARENT_KEY})

    extracted = propagator.extract(carrier)

    assert not extracted.has_trace
    assert extracted.baggage_dict() == {"tenant": "acme"}
    assert [(e.operation, e.key) for e in errors] == [(ContextPropagationError.EXTRACT, TRACEPARENT_KEY)]


def test_undecodable_bytes_are_reported_not_raised():
    propagator, errors = _collecting_propagator()

    extracted = propagator.extract({TRACEPARENT_KEY: b"\xff\xfe"})

    assert extracted.is_empty
    assert errors[0].key == TRACEPARENT_KEY
    assert isinstance(errors[0].cause, UnicodeDecodeError)


def test_inject_otel_uses_span_and_baggage_of_the_given_context(tracer):
    propagator, _ = _collecting_propagator()
    ctx = otel_baggage.set_baggage("tenant", "acme")
    with tracer.start_as_current_span("parent", context=ctx) as span:
        carrier: dict[str, Any] = {}
        written = propagator.inject_otel(trace.set_span_in_context(span, ctx), carrier)

    span_context = span.get_span_context()
    assert written.trace_id == trace.format_trace_id(span_context.trace_id)
    assert written.span_id == trace.format_span_id(span_context.span_id)
    assert written.baggage_dict() == {"tenant": "acme"}
    assert propagator.extract(carrier) == written


def test_to_otel_builds_remote_parent():
    causal = CausalContext(trace_id=TRACE_ID, span_id=SPAN_ID, baggage={"tenant": "acme"})

    ctx = causal.to_otel()

    span_context = trace.get_current_span(ctx).get_span_context()
    assert span_context.is_remote
    assert trace.format_trace_id(span_context.trace_id) == TRACE_ID
    assert otel_baggage.get_baggage("tenant", ctx) == "acme"
    assert CausalContext.from_otel(ctx) == causal


def test_fields_lists_every_propagation_key():
    propagator, _ = _collecting_propagator()
    assert propagator.fields == {TRACEPARENT_KEY, TRACESTATE_KEY, BAGGAGE_KEY}
