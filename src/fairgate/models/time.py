"""Timestamp handling for Fairgate payloads.

The API sends RFC 3339 strings, but unset timestamps arrive as either
``""`` or ``null``. Both decode to ``None``.

``ApiTime`` is part of the public model surface: payload models passed to
``FairgateClient.request`` or ``iter_pages`` annotate their timestamp
fields with it::

    class Contact(BaseModel):
        id: int
        created_at: ApiTime = None
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BeforeValidator


def _empty_to_none(value: Any) -> Any:
    if value is None or value == "":
        return None
    return value


ApiTime = Annotated[datetime | None, BeforeValidator(_empty_to_none)]
