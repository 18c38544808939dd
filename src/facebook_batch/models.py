"""
Request and response shapes exchanged with the Graph API batch endpoint.
"""

from __future__ import annotations

import typing as t
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class BatchRequest(BaseModel):
    """
    A single sub-request of a Graph API batch.

    Attributes
    ----------
    method : str
        HTTP method of the sub-request (e.g. ``"POST"``).
    relative_url : str
        Path relative to the versioned Graph API root, query string included.
    name : str | None
        Optional name other sub-requests can reference through JSONPath.
    depends_on : str | None
        Name of the sub-request this one depends on.
    omit_response_on_success : bool | None
        Whether Facebook should drop the body of a successful dependency.
    body : dict[str, typing.Any] | None
        Sub-request parameters, form-encoded before sending.
    response_access_path : str | None
        Dotted path extracted from the parsed response body, e.g.
        ``"data[0].thread_owner"``. Never sent to Facebook.
    """

    model_config = ConfigDict(extra="allow")

    method: str
    relative_url: str
    name: str | None = None
    depends_on: str | None = None
    omit_response_on_success: bool | None = None
    body: dict[str, t.Any] | None = None
    response_access_path: str | None = None


class BatchHeader(BaseModel):
    name: str
    value: str


class BatchResponse(BaseModel):
    """
    A single sub-response of a Graph API batch.
    """

    model_config = ConfigDict(extra="allow")

    code: int
    headers: list[BatchHeader] | None = None
    body: t.Any = Field(default=None)


@dataclass(frozen=True)
class BatchRequestErrorInfo:
    """
    A failed sub-request together with the sub-response that failed it.

    This is the value handed to retry predicates for per-item failures.
    """

    request: BatchRequest
    response: BatchResponse


batch_request_list_adapter = TypeAdapter(list[BatchRequest])
