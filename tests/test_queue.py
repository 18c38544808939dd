"""
Tests for the BatchQueue class in facebook_batch.queue.
"""

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio

from facebook_batch import messenger
from facebook_batch.exceptions import BatchRequestError, is_error_613
from facebook_batch.models import BatchRequest, BatchRequestErrorInfo, BatchResponse
from facebook_batch.queue import MAX_BATCH_SIZE, BatchQueue, QueueItem
from tests.mocks.clients import FailingBatchClient, FakeBatchClient, error_response, ok_response

IMAGE_URL = "https://example.com/kitten.jpg"


def _request(index: int = 0) -> BatchRequest:
    return messenger.send_image(f"psid-{index}", IMAGE_URL)


@pytest.fixture
def client() -> FakeBatchClient:
    return FakeBatchClient()


@pytest_asyncio.fixture
async def queue(client: FakeBatchClient):
    """
    Create a queue whose timer never fires during a test.

    Yields
    ------
    BatchQueue
        Queue flushed manually by the tests.
    """
    queue = BatchQueue(client, delay=60.0)
    yield queue
    queue.stop()


def test_queue_initialization():
    """Test that BatchQueue starts empty and idle."""
    queue = BatchQueue(FakeBatchClient())

    assert queue.queue == ()
    assert queue._delay == 1.0
    assert queue._retry_times == 0
    assert queue._include_headers is True
    assert queue._timer_task is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"delay": 0},
        {"delay": -1.0},
        {"retry_times": -1},
    ],
)
def test_queue_rejects_invalid_options(kwargs):
    with pytest.raises(ValueError):
        BatchQueue(FakeBatchClient(), **kwargs)


@pytest.mark.asyncio
async def test_push_adds_request_to_queue(queue: BatchQueue, client: FakeBatchClient):
    request = _request()
    future = queue.push(request)

    assert len(queue.queue) == 1
    assert queue.queue[0].request is request
    assert queue.queue[0].retry == 0
    assert not future.done()
    assert client.calls == []


@pytest.mark.asyncio
async def test_flush_resolves_with_response_body():
    client = FakeBatchClient(responder=lambda requests: [ok_response({"x": 1})])
    queue = BatchQueue(client, delay=60.0)
    future = queue.push(_request())

    await queue.flush()
    queue.stop()

    assert await future == {"x": 1}
    assert queue.queue == ()


@pytest.mark.asyncio
async def test_flush_rejects_failed_response_without_retry_by_default():
    client = FakeBatchClient(responder=lambda requests: [error_response("bad")])
    queue = BatchQueue(client, delay=60.0)
    request = _request()
    future = queue.push(request)

    await queue.flush()
    queue.stop()

    with pytest.raises(BatchRequestError, match="bad") as exc_info:
        await future
    assert exc_info.value.request is request
    assert exc_info.value.response.code == 400
    assert exc_info.value.response.body == {"error": {"message": "bad"}}
    assert len(client.calls) == 1
    assert queue.queue == ()


@pytest.mark.asyncio
async def test_responses_settle_requests_by_position():
    client = FakeBatchClient(
        responder=lambda requests: [
            ok_response({"recipient": request.body["recipient"]["id"]}) for request in requests
        ]
    )
    queue = BatchQueue(client, delay=60.0)
    futures = [queue.push(_request(index)) for index in range(5)]

    await queue.flush()
    queue.stop()

    results = await asyncio.gather(*futures)
    assert results == [{"recipient": f"psid-{index}"} for index in range(5)]
    assert [request.body["recipient"]["id"] for request in client.calls[0]] == [
        f"psid-{index}" for index in range(5)
    ]


@pytest.mark.asyncio
async def test_failures_do_not_affect_sibling_requests():
    client = FakeBatchClient(
        responder=lambda requests: [ok_response({"ok": True}), error_response("nope")]
    )
    queue = BatchQueue(client, delay=60.0)
    succeeding = queue.push(_request(1))
    failing = queue.push(_request(2))

    await queue.flush()
    queue.stop()

    assert await succeeding == {"ok": True}
    with pytest.raises(BatchRequestError, match="nope"):
        await failing


@pytest.mark.asyncio
async def test_push_flushes_when_batch_size_reached(queue: BatchQueue, client: FakeBatchClient):
    """Test that the 50th request triggers an immediate flush."""
    futures = [queue.push(_request(index)) for index in range(MAX_BATCH_SIZE - 1)]
    assert len(queue.queue) == MAX_BATCH_SIZE - 1

    last = messenger.send_text("psid-last", "hello")
    futures.append(queue.push(last))
    assert queue.queue == ()

    await asyncio.gather(*futures)
    assert len(client.calls) == 1
    assert len(client.calls[0]) == MAX_BATCH_SIZE
    assert client.calls[0][-1] is last


@pytest.mark.asyncio
async def test_push_beyond_batch_size_keeps_remainder(queue: BatchQueue, client: FakeBatchClient):
    """Test that the 51st request waits for the next flush."""
    futures = [queue.push(_request(index)) for index in range(MAX_BATCH_SIZE + 1)]

    assert len(queue.queue) == 1
    assert queue.queue[0].future is futures[-1]

    await asyncio.gather(*futures[:MAX_BATCH_SIZE])
    assert len(client.calls) == 1
    assert len(client.calls[0]) == MAX_BATCH_SIZE
    assert not futures[-1].done()

    await queue.flush()
    await futures[-1]
    assert len(client.calls) == 2
    assert len(client.calls[1]) == 1


@pytest.mark.asyncio
async def test_flush_with_empty_queue_does_not_call_client(
    queue: BatchQueue, client: FakeBatchClient
):
    await queue.flush()

    assert client.calls == []


@pytest.mark.asyncio
async def test_flush_takes_at_most_batch_size_requests(queue: BatchQueue, client: FakeBatchClient):
    loop = asyncio.get_running_loop()
    requests = [_request(index) for index in range(MAX_BATCH_SIZE + 10)]
    queue._items.extend(
        QueueItem(request=request, future=loop.create_future()) for request in requests
    )

    await queue.flush()

    assert client.calls[0] == requests[:MAX_BATCH_SIZE]
    assert [item.request for item in queue.queue] == requests[MAX_BATCH_SIZE:]


@pytest.mark.asyncio
async def test_timer_triggers_flush(client: FakeBatchClient):
    queue = BatchQueue(client, delay=0.05)
    future = queue.push(_request())

    result = await asyncio.wait_for(future, timeout=1.0)
    queue.stop()

    assert result == {"data": []}
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_flush_replaces_pending_timer(queue: BatchQueue):
    queue.push(_request())
    first_timer = queue._timer_task
    assert first_timer is not None

    await queue.flush()
    await asyncio.sleep(delay=0)

    assert first_timer.cancelled()
    assert queue._timer_task is not None
    assert queue._timer_task is not first_timer
    assert not queue._timer_task.done()


@pytest.mark.asyncio
async def test_manual_flush_resets_timer_cadence(client: FakeBatchClient):
    """Test that the next automatic flush happens ``delay`` after a manual flush."""
    queue = BatchQueue(client, delay=0.4)
    queue.push(_request(1))

    await asyncio.sleep(delay=0.2)
    await queue.flush()
    second = queue.push(_request(2))

    # The timer started by the first push would have fired at 0.4s.
    await asyncio.sleep(delay=0.3)
    assert len(client.calls) == 1
    assert len(queue.queue) == 1

    await asyncio.wait_for(second, timeout=1.0)
    queue.stop()
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_retry_times_bounds_attempts():
    client = FakeBatchClient(responder=lambda requests: [error_response("bad") for _ in requests])
    queue = BatchQueue(client, delay=60.0, retry_times=3)
    future = queue.push(_request())

    for _ in range(3):
        await queue.flush()
        assert not future.done()
        assert queue.queue[0].future is future

    await queue.flush()
    queue.stop()

    assert future.done()
    with pytest.raises(BatchRequestError):
        await future
    assert len(client.calls) == 4
    assert queue.queue == ()


@pytest.mark.asyncio
async def test_should_retry_selects_retried_requests():
    client = FakeBatchClient(
        responder=lambda requests: [
            error_response('(#100) Param recipient[id] must be a valid ID string (e.g., "123")'),
            error_response("(#613) Calls to this api have exceeded the rate limit."),
        ][-len(requests) :]
    )
    queue = BatchQueue(client, delay=60.0, retry_times=1, should_retry=is_error_613)
    request1 = _request(1)
    request2 = _request(2)
    future1 = queue.push(request1)
    future2 = queue.push(request2)
    assert len(queue.queue) == 2

    await queue.flush()

    assert len(queue.queue) == 1
    assert len(client.calls) == 1
    assert client.calls[0][0] is request1
    assert client.calls[0][1] is request2
    assert future1.done()
    assert not future2.done()
    with pytest.raises(BatchRequestError, match="#100"):
        await future1

    await queue.flush()
    queue.stop()

    assert queue.queue == ()
    assert len(client.calls) == 2
    assert client.calls[1] == [request2]
    assert client.calls[1][0] is request2
    with pytest.raises(BatchRequestError, match="#613"):
        await future2


@pytest.mark.asyncio
async def test_default_retry_predicate_retries_everything():
    responses = iter([[error_response("bad")], [ok_response({"done": True})]])
    client = FakeBatchClient(responder=lambda requests: next(responses))
    queue = BatchQueue(client, delay=60.0, retry_times=1)
    future = queue.push(_request())

    await queue.flush()
    assert not future.done()
    await queue.flush()
    queue.stop()

    assert await future == {"done": True}


@pytest.mark.asyncio
async def test_retry_predicate_receives_request_and_response():
    seen: list[BatchRequestErrorInfo] = []

    def should_retry(info):
        seen.append(info)
        return False

    client = FakeBatchClient(responder=lambda requests: [error_response("bad", code=403)])
    queue = BatchQueue(client, delay=60.0, retry_times=2, should_retry=should_retry)
    request = _request()
    future = queue.push(request)

    await queue.flush()
    queue.stop()

    assert len(seen) == 1
    assert seen[0].request is request
    assert seen[0].response.code == 403
    with pytest.raises(BatchRequestError):
        await future


@pytest.mark.asyncio
async def test_retried_requests_go_to_back_of_queue():
    client = FakeBatchClient(
        responder=lambda requests: [error_response("bad") for _ in requests],
        latency=0.01,
    )
    queue = BatchQueue(client, delay=60.0, retry_times=1)
    request_a = _request(1)
    request_b = _request(2)
    queue.push(request_a)

    flush_task = asyncio.create_task(queue.flush())
    await asyncio.sleep(delay=0)
    queue.push(request_b)
    await flush_task
    queue.stop()

    assert client.calls == [[request_a]]
    assert [item.request for item in queue.queue] == [request_b, request_a]
    assert [item.retry for item in queue.queue] == [0, 1]


@pytest.mark.asyncio
async def test_concurrent_flushes_do_not_send_twice():
    client = FakeBatchClient(latency=0.01)
    queue = BatchQueue(client, delay=60.0)
    futures = [queue.push(_request(index)) for index in range(3)]

    await asyncio.gather(queue.flush(), queue.flush())
    queue.stop()

    await asyncio.gather(*futures)
    assert len(client.calls) == 1
    assert len(client.calls[0]) == 3


@pytest.mark.asyncio
async def test_batch_call_failure_rejects_every_request():
    error = RuntimeError("boom")
    client = FailingBatchClient(error=error)
    queue = BatchQueue(client, delay=60.0)
    future1 = queue.push(_request(1))
    future2 = queue.push(_request(2))

    await queue.flush()
    queue.stop()

    for future in (future1, future2):
        with pytest.raises(RuntimeError, match="boom") as exc_info:
            await future
        assert exc_info.value is error
        assert not isinstance(exc_info.value, BatchRequestError)


@pytest.mark.asyncio
async def test_batch_call_failure_is_retried_per_request():
    seen: list[BaseException] = []

    def should_retry(error):
        seen.append(error)
        return True

    client = FailingBatchClient(error=ConnectionError("down"))
    queue = BatchQueue(client, delay=60.0, retry_times=1, should_retry=should_retry)
    futures = [queue.push(_request(index)) for index in range(2)]

    await queue.flush()
    assert len(queue.queue) == 2
    assert not any(future.done() for future in futures)
    assert all(isinstance(error, ConnectionError) for error in seen)

    await queue.flush()
    queue.stop()

    assert len(client.calls) == 2
    for future in futures:
        with pytest.raises(ConnectionError):
            await future


@pytest.mark.asyncio
async def test_missing_response_rejects_request():
    client = FakeBatchClient(responder=lambda requests: [ok_response({"first": True})])
    queue = BatchQueue(client, delay=60.0)
    first = queue.push(_request(1))
    second = queue.push(_request(2))

    await queue.flush()
    queue.stop()

    assert await first == {"first": True}
    with pytest.raises(RuntimeError, match="Missing response"):
        await second


@pytest.mark.asyncio
async def test_plain_dict_responses_are_validated():
    client = FakeBatchClient(responder=lambda requests: [{"code": 200, "body": {"id": "1"}}])
    queue = BatchQueue(client, delay=60.0)
    future = queue.push(_request())

    await queue.flush()
    queue.stop()

    assert await future == {"id": "1"}


@pytest.mark.asyncio
async def test_failing_retry_predicate_rejects_request():
    def should_retry(info):
        raise KeyError("predicate")

    client = FakeBatchClient(responder=lambda requests: [error_response("bad")])
    queue = BatchQueue(client, delay=60.0, retry_times=1, should_retry=should_retry)
    future = queue.push(_request())

    await queue.flush()
    queue.stop()

    with pytest.raises(KeyError):
        await future
    assert queue.queue == ()


@pytest.mark.asyncio
async def test_cancelled_future_is_skipped(queue: BatchQueue, client: FakeBatchClient):
    cancelled = queue.push(_request(1))
    kept = queue.push(_request(2))
    cancelled.cancel()

    await queue.flush()

    assert cancelled.cancelled()
    assert await kept == {"data": []}
    assert len(client.calls[0]) == 2


@pytest.mark.asyncio
async def test_include_headers_is_forwarded():
    client = FakeBatchClient()
    queue = BatchQueue(client, delay=60.0, include_headers=False)
    future = queue.push(_request())

    await queue.flush()
    queue.stop()
    await future

    assert client.include_headers == [False]


@pytest.mark.asyncio
async def test_stop_leaves_requests_pending(queue: BatchQueue, client: FakeBatchClient):
    future = queue.push(_request())
    timer = queue._timer_task

    queue.stop()
    await asyncio.sleep(delay=0)

    assert timer is not None and timer.cancelled()
    assert queue._timer_task is None
    assert len(queue.queue) == 1
    assert not future.done()

    await queue.flush()

    assert await future == {"data": []}
    assert queue._timer_task is None
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_stop_does_not_cancel_in_flight_batch():
    client = FakeBatchClient(latency=0.05)
    queue = BatchQueue(client, delay=60.0)
    future = queue.push(_request())

    flush_task = asyncio.create_task(queue.flush())
    await asyncio.sleep(delay=0.01)
    queue.stop()
    await flush_task

    assert await future == {"data": []}


@pytest.mark.asyncio
async def test_push_after_stop_does_not_restart_timer(queue: BatchQueue):
    queue.stop()
    queue.push(_request())

    assert queue._timer_task is None

    queue.start()
    assert queue._timer_task is not None


@pytest.mark.asyncio
async def test_close_settles_every_request():
    client = FakeBatchClient(latency=0.01)
    queue = BatchQueue(client, delay=60.0)
    futures = [queue.push(_request(index)) for index in range(MAX_BATCH_SIZE + 5)]

    await queue.close()

    assert all(future.done() for future in futures)
    assert sorted(len(call) for call in client.calls) == [5, MAX_BATCH_SIZE]
    assert queue._timer_task is None


@pytest.mark.asyncio
async def test_close_runs_pending_retries():
    responses = iter([[error_response("bad")], [error_response("bad")]])
    client = FakeBatchClient(responder=lambda requests: next(responses))
    queue = BatchQueue(client, delay=60.0, retry_times=1)
    future = queue.push(_request())

    await queue.close()

    with pytest.raises(BatchRequestError):
        await future
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_async_context_manager_flushes_on_exit(client: FakeBatchClient):
    async with BatchQueue(client, delay=60.0) as queue:
        assert queue._timer_task is not None
        future = queue.push(_request())

    assert await future == {"data": []}
    assert queue.queue == ()
    assert queue._timer_task is None


@pytest.mark.asyncio
async def test_queues_are_independent():
    client_a = FakeBatchClient()
    client_b = FakeBatchClient()
    queue_a = BatchQueue(client_a, delay=60.0)
    queue_b = BatchQueue(client_b, delay=60.0)
    queue_a.push(_request(1))
    queue_b.push(_request(2))

    await queue_a.flush()
    queue_a.stop()
    queue_b.stop()

    assert len(client_a.calls) == 1
    assert client_b.calls == []
    assert len(queue_b.queue) == 1


@pytest.mark.asyncio
async def test_sub_response_without_body_resolves_none():
    client = FakeBatchClient(responder=lambda requests: [BatchResponse(code=200)])
    queue = BatchQueue(client, delay=60.0)
    future = queue.push(_request())

    await queue.flush()
    queue.stop()

    assert await future is None


@pytest.mark.asyncio
async def test_cancelled_flush_still_settles_requests():
    client = FakeBatchClient(latency=0.2)
    queue = BatchQueue(client, delay=60.0)
    future = queue.push(_request())

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(queue.flush(), timeout=0.05)
    assert queue.queue == ()
    assert not future.done()

    await queue.close()

    assert future.done()
    assert await future == {"data": []}
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_close_does_not_wait_for_flushing_caller():
    client = FakeBatchClient(latency=0.05)
    queue = BatchQueue(client, delay=60.0)
    future = queue.push(_request())
    flushed = asyncio.Event()

    async def worker():
        await queue.flush()
        flushed.set()
        await asyncio.sleep(delay=5)

    worker_task = asyncio.create_task(worker())
    await asyncio.sleep(delay=0.01)

    await asyncio.wait_for(queue.close(), timeout=1.0)

    assert future.done()
    assert not worker_task.done()
    worker_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await worker_task


@pytest.mark.asyncio
async def test_push_accepts_request_without_method(queue: BatchQueue, client: FakeBatchClient):
    request = SimpleNamespace(body={"recipient": {"id": "psid-0"}})

    future = queue.push(request)

    assert len(queue.queue) == 1
    assert queue.queue[0].future is future

    await queue.flush()

    assert await future == {"data": []}
    assert client.calls == [[request]]


@pytest.mark.asyncio
async def test_retry_predicate_receives_error_info_of_rejection():
    seen: list[BatchRequestErrorInfo] = []

    def should_retry(info):
        seen.append(info)
        return False

    client = FakeBatchClient(responder=lambda requests: [error_response("bad")])
    queue = BatchQueue(client, delay=60.0, retry_times=1, should_retry=should_retry)
    future = queue.push(_request())

    await queue.flush()
    queue.stop()

    with pytest.raises(BatchRequestError) as exc_info:
        await future
    assert seen == [exc_info.value.info]
