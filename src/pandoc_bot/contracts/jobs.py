"""
Conversion job contracts.

These are the envelopes exchanged with the conversion workers:

- ConversionRequest   producer -> worker   (conversion_jobs stream)
- ConversionSuccess   worker -> producer   (conversion_results stream)
- ConversionFailure   worker -> producer   (conversion_results stream)

The `kind` field tags every envelope so a reader never needs outside context
to tell a success from a failure. Unknown fields are ignored on validation,
which lets workers add optional fields without breaking older routers.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

SCHEMA_VERSION = 1


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    v: int = Field(SCHEMA_VERSION, description="Envelope schema version.")
    conversation_id: int = Field(..., description="Chat the job belongs to.")


class ConversionRequest(_Envelope):
    """
    One conversion task for a worker.

    `data` is unbounded here; the ingress side caps uploads at
    settings.max_file_bytes before a request is ever built.
    """

    kind: Literal["conversion_request"] = "conversion_request"
    file_id: str = Field(..., min_length=1, description="Upstream file id (tracing/idempotency).")
    source_format: str = Field(..., min_length=1)
    target_format: str = Field(..., min_length=1)
    data: bytes = Field(..., description="Raw input file bytes.")
    filename: Optional[str] = Field(default=None, description="Original upload name, if known.")


class ConversionSuccess(_Envelope):
    kind: Literal["conversion_success"] = "conversion_success"
    data: bytes = Field(..., description="Converted output bytes.")
    target_format: str = Field(..., min_length=1)
    file_id: Optional[str] = None


class ConversionFailure(_Envelope):
    kind: Literal["conversion_failure"] = "conversion_failure"
    error_message: str = Field(..., min_length=1)
    file_id: Optional[str] = None


ConversionResponse = Annotated[
    Union[ConversionSuccess, ConversionFailure],
    Field(discriminator="kind"),
]

response_adapter: TypeAdapter[ConversionResponse] = TypeAdapter(ConversionResponse)
