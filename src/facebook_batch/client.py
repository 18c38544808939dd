"""
HTTP client executing batch calls against the Graph API batch endpoint.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import typing as t
from urllib.parse import parse_qs, quote, urlencode, urlparse

import httpx
import structlog

from facebook_batch.models import BatchRequest, BatchResponse
from facebook_batch.utils.paths import get_path

log = structlog.get_logger(__name__)

MAX_REQUESTS_PER_BATCH = 50
DEFAULT_ORIGIN = "https://graph.facebook.com"
DEFAULT_VERSION = "12.0"

OnRequest = t.Callable[[dict[str, t.Any]], t.Any]


def _extract_version(version: str) -> str:
    return version[1:] if version.startswith("v") else version


def _app_secret_proof(*, app_secret: str, access_token: str) -> str:
    return hmac.new(
        key=app_secret.encode("utf-8"),
        msg=access_token.encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()


def _encode_form_value(value: t.Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def encode_body(body: dict[str, t.Any]) -> str:
    """
    Form-encode a sub-request body the way the batch endpoint expects it.

    Parameters
    ----------
    body : dict[str, typing.Any]
        Sub-request parameters. Nested objects are sent as JSON strings.

    Returns
    -------
    str
        ``application/x-www-form-urlencoded`` payload.
    """
    return urlencode(
        query={key: _encode_form_value(value) for key, value in body.items()},
        quote_via=quote,
    )


class GraphBatchClient:
    """
    Send Graph API batch calls over HTTP.

    Parameters
    ----------
    access_token : str
        Default access token of the batch call.
    app_secret : str | None, optional
        App secret used to sign access tokens with ``appsecret_proof``.
    version : str, optional
        Graph API version, with or without the leading ``v``.
    origin : str, optional
        Graph API origin.
    skip_app_secret_proof : bool, optional
        Never add ``appsecret_proof`` even when an app secret is set.
    on_request : OnRequest | None, optional
        Called with ``method``, ``url``, ``body`` and ``headers`` of every
        sub-request before it is sent.
    timeout : float, optional
        HTTP timeout in seconds.
    """

    def __init__(
        self,
        access_token: str,
        *,
        app_secret: str | None = None,
        version: str = DEFAULT_VERSION,
        origin: str = DEFAULT_ORIGIN,
        skip_app_secret_proof: bool = False,
        on_request: OnRequest | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._access_token = access_token
        self._app_secret = app_secret
        self._version = _extract_version(version)
        self._origin = origin.rstrip("/")
        self._skip_app_secret_proof = skip_app_secret_proof
        self._on_request = on_request
        self._client_factory: t.Callable[[], httpx.AsyncClient] = lambda: httpx.AsyncClient(
            timeout=timeout
        )

    @property
    def base_url(self) -> str:
        return f"{self._origin}/v{self._version}/"

    @property
    def _signs_requests(self) -> bool:
        return bool(self._app_secret) and not self._skip_app_secret_proof

    def _add_app_secret_proof(self, *, item: dict[str, t.Any]) -> dict[str, t.Any]:
        if not self._signs_requests:
            return item

        relative_url: str = item["relative_url"]
        query = parse_qs(qs=urlparse(url=relative_url).query)
        access_token = (query.get("access_token") or [None])[0]
        if access_token is None and isinstance(item.get("body"), dict):
            access_token = item["body"].get("access_token")
        if not access_token:
            return item

        proof = _app_secret_proof(
            app_secret=t.cast(str, self._app_secret),
            access_token=access_token,
        )
        separator = "&" if "?" in relative_url else "?"
        return {**item, "relative_url": f"{relative_url}{separator}appsecret_proof={proof}"}

    def _notify(self, *, item: dict[str, t.Any]) -> None:
        if self._on_request is None:
            return
        try:
            self._on_request(
                {
                    "method": item["method"].lower(),
                    "url": f"{self.base_url}{item['relative_url']}",
                    "body": item.get("body"),
                    "headers": {},
                }
            )
        except Exception as error:
            log.warning(
                event="on_request callback failed",
                relative_url=item["relative_url"],
                error=str(object=error),
            )

    def _prepare_item(self, *, request: BatchRequest) -> dict[str, t.Any]:
        item = request.model_dump(exclude={"response_access_path"}, exclude_none=True)
        item = self._add_app_secret_proof(item=item)
        self._notify(item=item)
        if item.get("body"):
            item["body"] = encode_body(body=item["body"])
        return item

    def build_payload(
        self,
        requests: t.Sequence[BatchRequest],
        *,
        include_headers: bool = True,
    ) -> dict[str, t.Any]:
        """
        Build the JSON payload of a batch call.

        Parameters
        ----------
        requests : typing.Sequence[BatchRequest]
            Sub-requests of the batch.
        include_headers : bool, optional
            Ask Facebook to include sub-response headers.

        Returns
        -------
        dict[str, typing.Any]
            Payload posted to the versioned Graph API root.
        """
        if len(requests) > MAX_REQUESTS_PER_BATCH:
            raise ValueError(
                f"A batch holds at most {MAX_REQUESTS_PER_BATCH} requests, got {len(requests)}"
            )

        payload: dict[str, t.Any] = {
            "access_token": self._access_token,
            "include_headers": include_headers,
            "batch": [self._prepare_item(request=request) for request in requests],
        }
        if self._signs_requests:
            payload["appsecret_proof"] = _app_secret_proof(
                app_secret=t.cast(str, self._app_secret),
                access_token=self._access_token,
            )
        return payload

    @staticmethod
    def _parse_item(*, raw: t.Any, response_access_path: str | None) -> BatchResponse:
        if raw is None:
            # Facebook answers null for sub-requests that did not complete.
            return BatchResponse(code=0, body=None)

        body = raw.get("body")
        if isinstance(body, str):
            try:
                body = json.loads(s=body)
            except ValueError:
                pass
        if body is not None and response_access_path:
            body = get_path(body, response_access_path)
        return BatchResponse.model_validate({**raw, "body": body})

    async def send_batch(
        self,
        requests: list[BatchRequest],
        *,
        include_headers: bool = True,
    ) -> list[BatchResponse]:
        """
        Execute one batch call.

        Parameters
        ----------
        requests : list[BatchRequest]
            Sub-requests, at most ``MAX_REQUESTS_PER_BATCH``.
        include_headers : bool, optional
            Ask Facebook to include sub-response headers.

        Returns
        -------
        list[BatchResponse]
            One sub-response per request, in request order.

        Raises
        ------
        ValueError
            If more than ``MAX_REQUESTS_PER_BATCH`` requests are given.
        httpx.HTTPError
            If the batch call itself fails.
        """
        payload = self.build_payload(requests, include_headers=include_headers)
        log.debug(
            event="Posting batch",
            base_url=self.base_url,
            request_count=len(requests),
            include_headers=include_headers,
        )
        async with self._client_factory() as client:
            response = await client.post(url=self.base_url, json=payload)
            response.raise_for_status()
            data = response.json()

        if not isinstance(data, list):
            raise ValueError(f"Unexpected batch response payload: {type(data).__name__}")

        return [
            self._parse_item(raw=raw, response_access_path=request.response_access_path)
            for request, raw in zip(requests, data)
        ]
