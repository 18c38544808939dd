"""
Core engine of the package: a queue that coalesces individual Graph API
requests into batch calls.

Requests pushed to the queue are buffered and flushed as a single batch either
when the flush timer elapses or as soon as the buffer holds ``MAX_BATCH_SIZE``
items. Each caller gets a future settled from its own sub-response, and failed
sub-requests can be retried on later flushes according to a retry policy.
"""

from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass, replace

import structlog
from pydantic import ValidationError

from facebook_batch.exceptions import BatchRequestError
from facebook_batch.models import BatchRequest, BatchRequestErrorInfo, BatchResponse

log = structlog.get_logger(__name__)

MAX_BATCH_SIZE = 50

RetryPredicate = t.Callable[[BatchRequestErrorInfo | BaseException], bool]


class BatchClientLike(t.Protocol):
    """
    Collaborator executing one batch call.

    Implementations must return one response per request, in request order,
    or raise to signal a failure of the whole call.
    """

    async def send_batch(
        self,
        requests: list[BatchRequest],
        *,
        include_headers: bool = True,
    ) -> list[BatchResponse]: ...


@dataclass(frozen=True)
class QueueItem:
    """A request waiting to be flushed."""

    request: BatchRequest
    future: asyncio.Future[t.Any]
    retry: int = 0


def _always_retry(error: BatchRequestErrorInfo | BaseException) -> bool:
    return True


def _current_task() -> asyncio.Task[t.Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class BatchQueue:
    """
    Buffer Graph API requests and send them through batch calls.

    Parameters
    ----------
    client : BatchClientLike
        Collaborator performing the batch call, e.g. ``GraphBatchClient``.
    delay : float
        Seconds between two automatic flushes.
    should_retry : RetryPredicate | None
        Decide whether a failed item is retried. Receives a
        ``BatchRequestErrorInfo`` for failed sub-responses and the raised
        exception when the whole batch call failed. Retries every failure by
        default.
    retry_times : int
        Maximum number of retries per request. ``0`` disables retries.
    include_headers : bool
        Ask Facebook to include sub-response headers.

    Notes
    -----
    The flush timer starts with the first ``push`` (or on ``start``/``async
    with``), so a queue can be built outside of a running event loop.
    ``stop`` leaves buffered requests pending; use ``close`` to drain them.
    """

    def __init__(
        self,
        client: BatchClientLike,
        *,
        delay: float = 1.0,
        should_retry: RetryPredicate | None = None,
        retry_times: int = 0,
        include_headers: bool = True,
    ) -> None:
        if delay <= 0:
            raise ValueError(f"delay must be a positive number of seconds, got {delay}")
        if retry_times < 0:
            raise ValueError(f"retry_times cannot be negative, got {retry_times}")

        self._client = client
        self._delay = delay
        self._should_retry: RetryPredicate = should_retry or _always_retry
        self._retry_times = retry_times
        self._include_headers = include_headers

        self._items: list[QueueItem] = []
        self._timer_task: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[None]] = set()
        self._stopped = False

        log.debug(
            event="Initialized BatchQueue",
            delay=delay,
            retry_times=retry_times,
            include_headers=include_headers,
        )

    @property
    def queue(self) -> tuple[QueueItem, ...]:
        """Snapshot of the requests waiting for the next flush."""
        return tuple(self._items)

    def push(self, request: BatchRequest) -> asyncio.Future[t.Any]:
        """
        Queue a request and return the future of its response body.

        Parameters
        ----------
        request : BatchRequest
            Sub-request to send. The same object is handed to the client on
            every attempt.

        Returns
        -------
        asyncio.Future[typing.Any]
            Resolved with the sub-response body, or rejected with a
            ``BatchRequestError`` (failed sub-response) or the exception raised
            by the client (failed batch call).
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[t.Any] = loop.create_future()
        log.debug(
            event="Queueing request for batch",
            method=getattr(request, "method", None),
            relative_url=getattr(request, "relative_url", None),
            pending_count=len(self._items) + 1,
        )
        self._items.append(QueueItem(request=request, future=future))
        pending_count = len(self._items)

        if pending_count >= MAX_BATCH_SIZE:
            log.debug(event="Batch size reached", batch_size=MAX_BATCH_SIZE)
            self._spawn_send(items=self._drain())
        else:
            self._ensure_timer()
        return future

    async def flush(self) -> None:
        """
        Send up to ``MAX_BATCH_SIZE`` buffered requests as one batch.

        The flush timer restarts from now whether or not anything was sent,
        unless the queue is stopped: a manual flush after ``stop`` sends the
        batch without re-arming the timer.

        The batch call runs in its own task. Cancelling the caller does not
        cancel it, and its requests are still settled. Never raises on batch
        failures: they are reported through the request futures.
        """
        items = self._drain()
        if not items:
            log.debug(event="Flush skipped, queue is empty")
            return

        await asyncio.shield(self._spawn_send(items=items))

    def start(self) -> None:
        """Resume automatic flushing after ``stop``."""
        self._stopped = False
        self._ensure_timer()

    def stop(self) -> None:
        """
        Stop automatic flushing.

        Buffered requests stay pending and in-flight batches still settle.
        ``flush`` can still be called to drain the queue manually.
        """
        self._stopped = True
        self._cancel_timer()
        log.debug(event="BatchQueue stopped", pending_count=len(self._items))

    async def close(self) -> None:
        """
        Stop the timer, then flush until every pushed request is settled.
        """
        self.stop()
        while self._items or self._in_flight:
            if self._items:
                await self.flush()
            else:
                await asyncio.gather(*self._in_flight, return_exceptions=True)
        log.debug(event="BatchQueue closed")

    async def __aenter__(self) -> BatchQueue:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: t.Any,
    ) -> None:
        await self.close()

    def _ensure_timer(self) -> None:
        if self._stopped:
            return
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(
                coro=self._tick(),
                name="batch_queue_flush_timer",
            )

    def _cancel_timer(self) -> None:
        timer_task = self._timer_task
        self._timer_task = None
        # A timer that already fired is running its own flush; leave it alone.
        if timer_task and not timer_task.done() and timer_task is not _current_task():
            timer_task.cancel()

    async def _tick(self) -> None:
        try:
            await asyncio.sleep(delay=self._delay)
        except asyncio.CancelledError:
            log.debug(event="Flush timer cancelled")
            raise
        log.debug(event="Flush timer elapsed", pending_count=len(self._items))
        await self.flush()

    def _drain(self) -> list[QueueItem]:
        items = self._items[:MAX_BATCH_SIZE]
        del self._items[:MAX_BATCH_SIZE]
        self._cancel_timer()
        self._ensure_timer()
        log.debug(
            event="Drained queue",
            drained_count=len(items),
            remaining_count=len(self._items),
        )
        return items

    def _spawn_send(self, *, items: list[QueueItem]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro=self._send(items=items), name="batch_queue_send")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _send(self, *, items: list[QueueItem]) -> None:
        requests = [item.request for item in items]
        log.info(event="Sending batch", request_count=len(requests))
        try:
            responses = await self._client.send_batch(
                requests,
                include_headers=self._include_headers,
            )
            responses = list(responses)
        except Exception as error:
            log.warning(
                event="Batch call failed",
                request_count=len(requests),
                error=str(object=error),
            )
            for item in items:
                self._retry_or_reject(item=item, reason=error, rejection=error)
            return

        for index, item in enumerate(items):
            if index >= len(responses):
                error = RuntimeError(f"Missing response for batch item {index}")
                self._retry_or_reject(item=item, reason=error, rejection=error)
                continue

            try:
                response = BatchResponse.model_validate(responses[index])
            except ValidationError as error:
                self._retry_or_reject(item=item, reason=error, rejection=error)
                continue

            if response.code == 200:
                if not item.future.done():
                    item.future.set_result(response.body)
                continue

            rejection = BatchRequestError(request=item.request, response=response)
            self._retry_or_reject(item=item, reason=rejection.info, rejection=rejection)

        log.info(
            event="Batch settled",
            request_count=len(requests),
            pending_count=len(self._items),
        )

    def _retry_or_reject(
        self,
        *,
        item: QueueItem,
        reason: BatchRequestErrorInfo | BaseException,
        rejection: BaseException,
    ) -> None:
        if item.future.done():
            return

        if item.retry < self._retry_times:
            try:
                retry = self._should_retry(reason)
            except Exception as predicate_error:
                log.error(
                    event="Retry predicate failed",
                    relative_url=item.request.relative_url,
                    error=str(object=predicate_error),
                )
                item.future.set_exception(predicate_error)
                return
            if retry:
                self._items.append(replace(item, retry=item.retry + 1))
                log.debug(
                    event="Requeued failed request",
                    relative_url=item.request.relative_url,
                    retry=item.retry + 1,
                    retry_times=self._retry_times,
                )
                return

        log.debug(
            event="Rejected failed request",
            relative_url=item.request.relative_url,
            retry=item.retry,
            error=str(object=rejection),
        )
        item.future.set_exception(rejection)
