"""JSON message codec.

Bodies are UTF-8 JSON objects keyed by the payload's field names. Decoding
matches field names case-insensitively (`{"Fila": "ok"}` and `{"FILA": "ok"}`
both fill `fila`) and reports malformed input as a `DecodeFailure` value
instead of raising.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Generic, Mapping, TypeVar

from pydantic import BaseModel, ValidationError

from shared.messaging.exceptions import MessagingSerializationError

T = TypeVar("T", bound=BaseModel)


@dataclass(frozen=True)
class DecodeFailure:
    """Body could not be turned into a usable payload."""

    reason: str


def is_decode_failure(value: Any) -> bool:
    return isinstance(value, DecodeFailure)


def _field_lookup(model: type[BaseModel]) -> dict[str, str]:
    lookup: dict[str, str] = {}
    for name, info in model.model_fields.items():
        key = info.alias or name
        lookup[name.casefold()] = key
        if info.alias:
            lookup[info.alias.casefold()] = key
    return lookup


class JsonMessageCodec(Generic[T]):
    """Encodes payloads to JSON bytes and decodes them back into `model`.

    Without a model, `decode` returns the raw JSON object.
    """

    def __init__(self, model: type[T] | None = None) -> None:
        self._model = model
        self._lookup = _field_lookup(model) if model is not None else {}

    @property
    def model(self) -> type[T] | None:
        return self._model

    def encode(self, payload: Any) -> bytes:
        try:
            if isinstance(payload, BaseModel):
                data: Any = payload.model_dump(mode="json")
            elif is_dataclass(payload) and not isinstance(payload, type):
                data = asdict(payload)
            elif isinstance(payload, Mapping):
                data = dict(payload)
            else:
                raise TypeError(f"cannot encode payload of type {type(payload).__name__}")
            return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise MessagingSerializationError(str(exc)) from exc

    def decode(self, data: bytes | bytearray | str) -> T | dict[str, Any] | DecodeFailure:
        try:
            text = bytes(data).decode("utf-8") if isinstance(data, (bytes, bytearray)) else data
            raw = json.loads(text)
        except (ValueError, TypeError, RecursionError) as exc:
            return DecodeFailure(f"invalid json: {type(exc).__name__}")
        if not isinstance(raw, dict):
            return DecodeFailure(f"expected a JSON object, got {type(raw).__name__}")
        if self._model is None:
            return raw

        normalized: dict[str, Any] = {}
        for key, value in raw.items():
            target = self._lookup.get(str(key).casefold())
            if target is not None:
                normalized[target] = value
        try:
            return self._model.model_validate(normalized)
        except ValidationError as exc:
            return DecodeFailure(f"invalid {self._model.__name__}: {exc.error_count()} validation error(s)")
        except (ValueError, TypeError, RecursionError) as exc:
            return DecodeFailure(f"invalid {self._model.__name__}: {type(exc).__name__}")
