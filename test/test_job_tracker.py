import asyncio
import json
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from hunyuan3d_client.api import SUBMIT_ACTION, Ai3dApi
from hunyuan3d_client.errors import (
    CredentialError,
    JobFailure,
    SubmissionError,
    TransportError,
)
from hunyuan3d_client.job_tracker import JobTracker, select_result_file
from hunyuan3d_client.models import Credentials, JobStatus, PollingConfig, ResultFile
from hunyuan3d_client.store import JobStore

CREDENTIALS = Credentials(secret_id="AKIDTEST", secret_key="test-secret-key")

RUNNING = {"Response": {"Status": "RUN", "ErrorCode": "", "ErrorMessage": ""}}
PROCESSING = {"Response": {"Status": "PROCESSING"}}
DONE_GLB = {
    "Response": {
        "Status": "DONE",
        "ErrorCode": "",
        "ResultFile3Ds": [
            {
                "Type": "GLB",
                "Url": "https://x/model.glb",
                "PreviewImageUrl": "https://x/preview.png",
            }
        ],
    }
}
CONTENT_AUDIT = {
    "Response": {
        "Status": "FAIL",
        "ErrorCode": "FailedOperation.ContentAudit",
        "ErrorMessage": "Content failed the audit check",
    }
}


class ScriptedTransport:
    """Replays canned responses; the last response of each script repeats.

    A script item may be a dict (sent as JSON), raw bytes, an exception to
    raise, or a ``(delay, item)`` tuple.
    """

    def __init__(self, submit=None, queries=None):
        self.submit_responses = list(submit or [{"Response": {"JobId": "J1"}}])
        self.query_responses = {job_id: list(items) for job_id, items in (queries or {}).items()}
        self.requests = []

    def queries_for(self, job_id: str) -> int:
        return sum(
            1
            for headers, body in self.requests
            if headers["X-TC-Action"] != SUBMIT_ACTION and json.loads(body)["JobId"] == job_id
        )

    async def post(self, url, headers, body):
        self.requests.append((headers, body))
        if headers["X-TC-Action"] == SUBMIT_ACTION:
            script = self.submit_responses
        else:
            script = self.query_responses[json.loads(body)["JobId"]]
        item = script.pop(0) if len(script) > 1 else script[0]

        if isinstance(item, tuple):
            delay, item = item
            await asyncio.sleep(delay)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, bytes):
            return item
        return json.dumps(item).encode("utf-8")


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.005)


def manual_config(**overrides) -> PollingConfig:
    """Config whose scheduled polls never fire during a test."""
    values = {"first_poll_delay": 60.0, "interval": 60.0, "max_anomalies": 3}
    values.update(overrides)
    return PollingConfig(**values)


@pytest_asyncio.fixture
async def make_tracker() -> AsyncGenerator:
    trackers = []

    def factory(transport, config=None, **kwargs):
        api = Ai3dApi(CREDENTIALS, transport)
        tracker = JobTracker(api, config or manual_config(), **kwargs)
        trackers.append(tracker)
        return tracker

    yield factory
    for tracker in trackers:
        await tracker.close()


@pytest.mark.asyncio
async def test_submit_creates_processing_record(make_tracker):
    transport = ScriptedTransport(queries={"J1": [RUNNING]})
    tracker = make_tracker(transport)

    job_id = await tracker.submit("a red chair")
    record = tracker.get_status(job_id)

    assert job_id == "J1"
    assert record.status == JobStatus.processing
    assert record.progress == 0
    assert record.model_url is None
    assert record.error is None
    assert json.loads(transport.requests[0][1]) == {"Prompt": "a red chair"}


@pytest.mark.asyncio
async def test_submit_error_creates_no_record(make_tracker):
    rejected = {"Response": {"Error": {"Code": "LimitExceeded", "Message": "Quota exceeded"}}}
    transport = ScriptedTransport(submit=[rejected])
    tracker = make_tracker(transport)

    with pytest.raises(SubmissionError) as exc_info:
        await tracker.submit("a red chair")

    assert exc_info.value.code == "LimitExceeded"
    assert exc_info.value.message == "Quota exceeded"
    assert len(tracker.store) == 0
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_submit_transport_failure_is_not_retried(make_tracker):
    transport = ScriptedTransport(submit=[TransportError("connection refused")])
    tracker = make_tracker(transport)

    with pytest.raises(TransportError):
        await tracker.submit("a red chair")

    assert len(tracker.store) == 0
    assert len(transport.requests) == 1


def test_bad_credentials_fail_before_any_request():
    transport = ScriptedTransport()
    with pytest.raises(CredentialError):
        Ai3dApi(Credentials(secret_id="", secret_key="key"), transport)
    assert transport.requests == []


@pytest.mark.asyncio
async def test_processing_then_done(make_tracker):
    transport = ScriptedTransport(queries={"J1": [PROCESSING, DONE_GLB]})
    tracker = make_tracker(transport)
    job_id = await tracker.submit("a red chair")

    assert await tracker.poll(job_id) is True
    record = tracker.get_status(job_id)
    assert record.status == JobStatus.processing
    assert record.progress == 10
    assert record.model_url is None

    assert await tracker.poll(job_id) is False
    record = tracker.get_status(job_id)
    assert record.status == JobStatus.success
    assert record.progress == 100
    assert record.model_url == "https://x/model.glb"
    assert record.model_type == "GLB"
    assert record.preview_image_url == "https://x/preview.png"
    assert record.completed_at is not None


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_capped(make_tracker):
    transport = ScriptedTransport(queries={"J1": [RUNNING] * 12 + [DONE_GLB]})
    tracker = make_tracker(transport)
    job_id = await tracker.submit("a red chair")

    progress = []
    while await tracker.poll(job_id):
        progress.append(tracker.get_status(job_id).progress)
    progress.append(tracker.get_status(job_id).progress)

    assert progress == sorted(progress)
    assert max(progress[:-1]) == 90
    assert progress[-1] == 100


@pytest.mark.asyncio
async def test_vendor_error_fails_job_and_stops_polling(make_tracker):
    transport = ScriptedTransport(queries={"J1": [CONTENT_AUDIT]})
    tracker = make_tracker(transport, PollingConfig(first_poll_delay=0, interval=0.01))
    job_id = await tracker.submit("a red chair")

    with pytest.raises(JobFailure) as exc_info:
        await tracker.wait_until_complete(job_id, timeout=2.0)
    await asyncio.sleep(0.05)

    record = tracker.get_status(job_id)
    assert record.status == JobStatus.failed
    assert "Content failed the audit check" in record.error
    assert "Content failed the audit check" in exc_info.value.error
    assert record.model_url is None
    assert record.progress < 100
    assert transport.queries_for(job_id) == 1
    assert not tracker.scheduler.is_scheduled(job_id)


@pytest.mark.asyncio
async def test_call_level_error_fails_job(make_tracker):
    not_found = {"Response": {"Error": {"Code": "ResourceNotFound", "Message": "No such job"}}}
    transport = ScriptedTransport(queries={"J1": [not_found]})
    tracker = make_tracker(transport)
    job_id = await tracker.submit("a red chair")

    assert await tracker.poll(job_id) is False
    assert tracker.get_status(job_id).error == "No such job"


@pytest.mark.asyncio
async def test_transport_timeout_leaves_record_and_reschedules_once(make_tracker):
    transport = ScriptedTransport(
        queries={"J1": [TransportError("Request timed out after 30s"), RUNNING]}
    )
    tracker = make_tracker(transport, PollingConfig(first_poll_delay=0, interval=0.1))
    job_id = await tracker.submit("a red chair")
    before = tracker.get_status(job_id)

    await wait_until(lambda: transport.queries_for(job_id) == 1)
    await asyncio.sleep(0.05)
    assert transport.queries_for(job_id) == 1
    assert tracker.get_status(job_id) == before
    assert tracker.scheduler.is_scheduled(job_id)

    await wait_until(lambda: transport.queries_for(job_id) == 2)
    await wait_until(lambda: tracker.get_status(job_id).progress == 10)
    assert tracker.get_status(job_id).status == JobStatus.processing


@pytest.mark.asyncio
async def test_malformed_body_is_transient(make_tracker):
    transport = ScriptedTransport(queries={"J1": [b"<html>bad gateway</html>", RUNNING]})
    tracker = make_tracker(transport)
    job_id = await tracker.submit("a red chair")
    before = tracker.get_status(job_id)

    assert await tracker.poll(job_id) is True
    assert tracker.get_status(job_id) == before


@pytest.mark.asyncio
async def test_missing_envelope_is_transient(make_tracker):
    transport = ScriptedTransport(queries={"J1": [{"unexpected": True}]})
    tracker = make_tracker(transport)
    job_id = await tracker.submit("a red chair")

    assert await tracker.poll(job_id) is True
    assert tracker.get_status(job_id).status == JobStatus.processing


@pytest.mark.asyncio
async def test_stale_response_does_not_revert_failure(make_tracker):
    transport = ScriptedTransport(queries={"J1": [(0.1, PROCESSING), CONTENT_AUDIT]})
    tracker = make_tracker(transport)
    job_id = await tracker.submit("a red chair")

    slow_poll = asyncio.create_task(tracker.poll(job_id))
    await asyncio.sleep(0.01)
    assert await tracker.poll(job_id) is False
    assert await slow_poll is False

    record = tracker.get_status(job_id)
    assert record.status == JobStatus.failed
    assert record.progress == 0


@pytest.mark.asyncio
async def test_poll_after_terminal_state_is_a_no_op(make_tracker):
    transport = ScriptedTransport(queries={"J1": [DONE_GLB]})
    tracker = make_tracker(transport)
    job_id = await tracker.submit("a red chair")
    await tracker.poll(job_id)
    final = tracker.get_status(job_id)
    requests = len(transport.requests)

    assert await tracker.poll(job_id) is False
    assert len(transport.requests) == requests
    assert tracker.get_status(job_id) == final


@pytest.mark.asyncio
async def test_done_without_result_file_is_retried_then_failed(make_tracker):
    done_empty = {"Response": {"Status": "DONE", "ResultFile3Ds": []}}
    transport = ScriptedTransport(queries={"J1": [done_empty]})
    tracker = make_tracker(transport)
    job_id = await tracker.submit("a red chair")

    assert await tracker.poll(job_id) is True
    assert await tracker.poll(job_id) is True
    assert tracker.get_status(job_id).status == JobStatus.processing
    assert await tracker.poll(job_id) is False

    record = tracker.get_status(job_id)
    assert record.status == JobStatus.failed
    assert "no usable result file" in record.error


@pytest.mark.asyncio
async def test_unknown_status_is_tolerated(make_tracker):
    odd = {"Response": {"Status": "QUEUED_SOMEWHERE"}}
    transport = ScriptedTransport(queries={"J1": [odd, RUNNING]})
    tracker = make_tracker(transport)
    job_id = await tracker.submit("a red chair")

    assert await tracker.poll(job_id) is True
    assert tracker.get_status(job_id).status == JobStatus.processing
    assert tracker.get_status(job_id).progress == 0

    assert await tracker.poll(job_id) is True
    assert tracker.get_status(job_id).progress == 10


@pytest.mark.asyncio
async def test_obj_used_when_no_glb(make_tracker):
    done_obj = {
        "Response": {
            "Status": "DONE",
            "ResultFile3Ds": [{"Type": "OBJ", "Url": "https://x/model.zip"}],
        }
    }
    transport = ScriptedTransport(queries={"J1": [done_obj]})
    tracker = make_tracker(transport)
    job_id = await tracker.submit("a red chair")

    assert await tracker.poll(job_id) is False
    record = tracker.get_status(job_id)
    assert record.model_type == "OBJ"
    assert record.model_url == "https://x/model.zip"


def test_select_result_file_prefers_glb():
    files = [
        ResultFile(type="OBJ", url="https://x/model.zip"),
        ResultFile(type="GLB", url=None),
        ResultFile(type="GLB", url="https://x/model.glb"),
    ]
    assert select_result_file(files).url == "https://x/model.glb"
    assert select_result_file(files[:2]).type == "OBJ"
    assert select_result_file([ResultFile(type="FBX", url="https://x/a.fbx")]) is None


@pytest.mark.asyncio
async def test_cancel_stops_polling_and_freezes_record(make_tracker):
    transport = ScriptedTransport(queries={"J1": [RUNNING]})
    tracker = make_tracker(transport, PollingConfig(first_poll_delay=0.05, interval=0.05))
    job_id = await tracker.submit("a red chair")

    assert tracker.cancel(job_id) is True
    await asyncio.sleep(0.15)

    assert transport.queries_for(job_id) == 0
    assert tracker.get_status(job_id).cancelled
    assert await tracker.poll(job_id) is False
    assert tracker.cancel(job_id) is False
    assert tracker.cancel("unknown") is False
    with pytest.raises(JobFailure):
        await tracker.wait_until_complete(job_id)


@pytest.mark.asyncio
async def test_job_timeout_fails_job(make_tracker):
    now = [0.0]
    transport = ScriptedTransport(queries={"J1": [RUNNING]})
    tracker = make_tracker(transport, manual_config(job_timeout=5.0), clock=lambda: now[0])
    job_id = await tracker.submit("a red chair")

    assert await tracker.poll(job_id) is True
    now[0] = 10.0
    assert await tracker.poll(job_id) is False

    record = tracker.get_status(job_id)
    assert record.status == JobStatus.failed
    assert "timed out" in record.error
    assert transport.queries_for(job_id) == 1


@pytest.mark.asyncio
async def test_terminal_records_expire(make_tracker):
    now = [0.0]
    transport = ScriptedTransport(queries={"J1": [DONE_GLB]})
    store = JobStore(ttl=10.0, clock=lambda: now[0])
    tracker = make_tracker(transport, store=store)
    job_id = await tracker.submit("a red chair")
    await tracker.poll(job_id)

    now[0] = 9.0
    assert tracker.get_status(job_id) is not None
    now[0] = 10.5
    assert tracker.get_status(job_id) is None


@pytest.mark.asyncio
async def test_injected_empty_store_is_used(make_tracker):
    store = JobStore(ttl=5.0)
    tracker = make_tracker(ScriptedTransport(queries={"J1": [RUNNING]}), store=store)
    job_id = await tracker.submit("a red chair")

    assert tracker.store is store
    assert store.get(job_id).status == JobStatus.processing


@pytest.mark.asyncio
async def test_failing_callback_on_completion_still_finishes_job(make_tracker):
    def on_change(record):
        if record.status == JobStatus.success:
            raise OSError("disk full")

    transport = ScriptedTransport(queries={"J1": [RUNNING, DONE_GLB]})
    tracker = make_tracker(
        transport, PollingConfig(first_poll_delay=0, interval=0.01), on_status_change=on_change
    )
    job_id = await tracker.submit("a red chair")

    record = await tracker.wait_until_complete(job_id, timeout=2.0)

    assert record.status == JobStatus.success
    assert job_id not in tracker._submitted_at
    assert job_id not in tracker._anomalies
    assert job_id not in tracker._finished
    assert transport.queries_for(job_id) == 2


@pytest.mark.asyncio
async def test_failing_callback_on_submit_still_schedules_job(make_tracker):
    def on_change(record):
        raise RuntimeError("callback broke")

    transport = ScriptedTransport(queries={"J1": [DONE_GLB]})
    tracker = make_tracker(
        transport, PollingConfig(first_poll_delay=0, interval=0.01), on_status_change=on_change
    )
    job_id = await tracker.submit("a red chair")

    record = await tracker.wait_until_complete(job_id, timeout=2.0)

    assert record.status == JobStatus.success
    assert transport.queries_for(job_id) == 1


@pytest.mark.asyncio
async def test_status_change_callback(make_tracker):
    changes = []

    async def on_change(record):
        changes.append(record.status)

    transport = ScriptedTransport(queries={"J1": [RUNNING, RUNNING, DONE_GLB]})
    tracker = make_tracker(transport, on_status_change=on_change)
    job_id = await tracker.submit("a red chair")
    while await tracker.poll(job_id):
        pass

    assert changes == [JobStatus.processing, JobStatus.success]


@pytest.mark.asyncio
async def test_concurrent_jobs_are_independent(make_tracker):
    transport = ScriptedTransport(
        submit=[{"Response": {"JobId": "J1"}}, {"Response": {"JobId": "J2"}}],
        queries={"J1": [RUNNING, DONE_GLB], "J2": [RUNNING, RUNNING, CONTENT_AUDIT]},
    )
    tracker = make_tracker(transport, PollingConfig(first_poll_delay=0, interval=0.01))

    first, second = await asyncio.gather(
        tracker.submit("a red chair"), tracker.submit("a blue table")
    )
    record = await tracker.wait_until_complete(first, timeout=2.0)
    with pytest.raises(JobFailure):
        await tracker.wait_until_complete(second, timeout=2.0)

    assert record.model_url == "https://x/model.glb"
    assert tracker.get_status(second).status == JobStatus.failed
    assert transport.queries_for(first) == 2
    assert transport.queries_for(second) == 3


@pytest.mark.asyncio
async def test_wait_until_complete_unknown_job(make_tracker):
    tracker = make_tracker(ScriptedTransport())
    with pytest.raises(KeyError):
        await tracker.wait_until_complete("missing")


@pytest.mark.asyncio
async def test_wait_until_complete_times_out(make_tracker):
    transport = ScriptedTransport(queries={"J1": [RUNNING]})
    tracker = make_tracker(transport)
    job_id = await tracker.submit("a red chair")

    with pytest.raises(TimeoutError):
        await tracker.wait_until_complete(job_id, timeout=0.05)
