"""Response envelope and pagination models.

Every Fairgate response shares the same wrapper::

    {"success": true, "code": 200, "message": "", "data": {...}, "errors": []}

The payload is only meaningful when ``success`` is true. Otherwise the
message and field errors are combined into a single ``APIReportedError``.
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from fairgate.models.errors import APIReportedError, DecodeError

T = TypeVar("T")


class FieldError(BaseModel):
    """Field-level error reported by the API."""

    field: str = ""
    message: str = ""

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class Envelope(BaseModel, Generic[T]):
    """Success/error wrapper shared by all API responses."""

    success: bool
    code: int = 0
    message: str = ""
    data: T | None = None
    errors: list[FieldError] = Field(default_factory=list)

    def error(self) -> APIReportedError | None:
        """Return the aggregated API error, or None on success."""
        if self.success:
            return None
        return APIReportedError(self.message, self.errors, code=self.code)

    def unwrap(self) -> T | None:
        """Return the payload or raise the aggregated API error."""
        err = self.error()
        if err is not None:
            raise err
        return self.data


def decode_envelope(raw: bytes | str, data_type: Any) -> Any:
    """Decode a raw response body into its typed payload.

    The wrapper is validated first with an untyped payload; ``data`` is
    validated against ``data_type`` only when the envelope reports success,
    so a failed envelope never trips over a payload of the wrong shape.

    Args:
        raw: Raw JSON response body
        data_type: Any type pydantic can validate (model, list[Model], dict)

    Returns:
        The validated payload, or None when a successful envelope carries
        no data

    Raises:
        DecodeError: If the body is not a valid envelope or payload
        APIReportedError: If the envelope reports ``success: false``
    """
    try:
        envelope = Envelope[Any].model_validate_json(raw)
    except ValidationError as e:
        raise DecodeError(f"Invalid response envelope: {e}") from e

    envelope.unwrap()
    if envelope.data is None:
        return None

    try:
        return TypeAdapter(data_type).validate_python(envelope.data)
    except ValidationError as e:
        raise DecodeError(f"Invalid response payload: {e}") from e


class Pagination(BaseModel):
    """Pagination metadata embedded in list responses.

    Zero means the API did not report the value.
    """

    model_config = ConfigDict(populate_by_name=True)

    total_records: int = Field(default=0, alias="totalRecords")
    total_pages: int = Field(default=0, alias="totalPages")
    page_no: int = Field(default=0, alias="pageNo")
    page_limit: int = Field(default=0, alias="pageLimit")


class PageParams(BaseModel):
    """Pagination parameters sent as query parameters."""

    page_no: int = 1
    page_limit: int = 100

    def to_query(self) -> dict[str, int]:
        query = {}
        if self.page_no:
            query["pageNo"] = self.page_no
        if self.page_limit:
            query["pageLimit"] = self.page_limit
        return query

    def next_page(self) -> PageParams:
        return self.model_copy(update={"page_no": self.page_no + 1})
