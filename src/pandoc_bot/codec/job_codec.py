"""
Job codec (queue wire format).

Envelopes travel as msgpack maps: length-prefixed, self-describing binary with
native `bin` values for file bytes. The map carries the envelope's `kind` tag
and schema version `v`; decoding validates through the pydantic contracts, so
unknown keys are dropped and anything malformed becomes a DecodeFailure.
"""

from __future__ import annotations

from typing import Any, Dict

import msgpack
from pydantic import BaseModel, ValidationError

from src.pandoc_bot.contracts.jobs import (
    ConversionRequest,
    ConversionResponse,
    response_adapter,
)
from src.pandoc_bot.errors import DecodeFailure


def _pack(envelope: BaseModel) -> bytes:
    doc = envelope.model_dump(exclude_none=True)
    return msgpack.packb(doc, use_bin_type=True)


def _unpack(raw: bytes) -> Dict[str, Any]:
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise DecodeFailure(f"Expected bytes payload, got {type(raw).__name__}")
    try:
        doc = msgpack.unpackb(bytes(raw), raw=False, strict_map_key=True)
    except (ValueError, TypeError, msgpack.exceptions.UnpackException) as exc:
        raise DecodeFailure(f"Payload is not a msgpack document: {exc}") from exc
    if not isinstance(doc, dict):
        raise DecodeFailure(f"Payload must be a map, got {type(doc).__name__}")
    return doc


def encode_request(request: ConversionRequest) -> bytes:
    return _pack(request)


def decode_request(raw: bytes) -> ConversionRequest:
    doc = _unpack(raw)
    try:
        return ConversionRequest.model_validate(doc)
    except ValidationError as exc:
        raise DecodeFailure(f"Invalid conversion request: {exc.error_count()} error(s)") from exc


def encode_response(response: ConversionResponse) -> bytes:
    return _pack(response)


def decode_response(raw: bytes) -> ConversionResponse:
    """
    Decode a worker response. Raises DecodeFailure on anything that is not a
    well-formed success or failure envelope.
    """
    doc = _unpack(raw)
    try:
        return response_adapter.validate_python(doc)
    except ValidationError as exc:
        raise DecodeFailure(f"Invalid conversion response: {exc.error_count()} error(s)") from exc
