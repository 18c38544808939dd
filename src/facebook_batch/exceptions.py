"""
Errors surfaced to callers of the batch queue.
"""

from __future__ import annotations

import json
import re
import typing as t

import httpx

from facebook_batch.models import BatchRequest, BatchRequestErrorInfo, BatchResponse

_RATE_LIMIT_PATTERN = re.compile(pattern=r"#613")


def _extract_body(*, response: t.Any) -> t.Any:
    if isinstance(response, BatchResponse):
        return response.body
    if isinstance(response, httpx.Response):
        try:
            return response.json()
        except ValueError:
            return None
    return None


def get_error_message(error: BatchRequestErrorInfo | BaseException) -> str:
    """
    Extract the Graph API error message from a failed sub-request.

    Parameters
    ----------
    error : BatchRequestErrorInfo | BaseException
        Per-item failure info, or a raised exception carrying a ``response``.

    Returns
    -------
    str
        ``body["error"]["message"]`` when present, otherwise an empty string.
    """
    body = _extract_body(response=getattr(error, "response", None))
    if not isinstance(body, dict):
        return ""
    details = body.get("error")
    if not isinstance(details, dict):
        return ""
    message = details.get("message")
    return message if isinstance(message, str) else ""


def is_error_613(error: BatchRequestErrorInfo | BaseException) -> bool:
    """
    Detect Graph API rate limiting (error code ``#613``).

    Suitable as a ``should_retry`` predicate for ``BatchQueue``.
    """
    return bool(_RATE_LIMIT_PATTERN.search(get_error_message(error)))


def _dump_json(value: t.Any) -> str:
    if value is None:
        return ""
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


class BatchRequestError(Exception):
    """
    A sub-request of a batch came back with a non-success status code.

    Parameters
    ----------
    request : BatchRequest
        The request exactly as it was pushed to the queue.
    response : BatchResponse
        The failing sub-response.
    """

    def __init__(self, request: BatchRequest, response: BatchResponse) -> None:
        self.request = request
        self.response = response
        message = get_error_message(BatchRequestErrorInfo(request=request, response=response))
        super().__init__(f"Batch Request Error - {message}")

    @property
    def info(self) -> BatchRequestErrorInfo:
        return BatchRequestErrorInfo(request=self.request, response=self.response)

    def describe(self) -> str:
        """
        Render the failed request and response in a readable block.

        Returns
        -------
        str
            Multi-line report with the request line, request body, status code
            and response body.
        """
        return "\n".join(
            [
                "Error Message - Batch Request Error",
                "",
                "Request -",
                "",
                f"{self.request.method.upper()} {self.request.relative_url}",
                _dump_json(self.request.body),
                "",
                "Response -",
                str(self.response.code),
                _dump_json(self.response.body),
            ]
        )
