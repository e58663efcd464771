import warnings
from dataclasses import replace

import anyio
import pytest

from application.services.multipart_coordinator import (
    MultipartOptions,
    MultipartUploadCoordinator,
)
from application.services.progress import ProgressAggregator
from application.utils.sources import BytesSource
from domain.common.exceptions import (
    InvalidUploadInputException,
    PartTransferException,
    SessionAbortedException,
    SignatureExpiredException,
    StorageProviderException,
)
from domain.upload import Category, MultipartSession, SessionState, UploadRequest

KEY = "uploads/video/1718000000000-abcdefgh-clip.mp4"


def _coordinator(storage, transfer, options, size, **kwargs):
    request = UploadRequest(BytesSource(b"x" * size), Category.VIDEO, "clip.mp4")
    return MultipartUploadCoordinator(storage, transfer, request, KEY, "video/mp4", options, **kwargs)


@pytest.mark.asyncio
async def test_large_upload_completes_in_ascending_order(storage, transfer, fast_options):
    coordinator = _coordinator(storage, transfer, fast_options, 600 * 1024)
    result = await coordinator.run()

    assert result.upload_id == "upload-1"
    assert result.etag == "final-600"
    assert result.size == 600 * 1024
    assert coordinator.state is SessionState.COMPLETED
    assert storage.calls == ["initiate_multipart_upload", "complete_multipart_upload"]
    numbers = [n for n, _ in storage.complete_calls[0]]
    assert numbers == list(range(1, 601))
    assert all(count == 1 for count in storage.sign_counts.values())
    assert len(storage.sign_counts) == 600
    assert 1 < transfer.max_active <= 4


@pytest.mark.asyncio
async def test_parts_finishing_out_of_order(storage, transfer, fast_options):
    transfer.delays = {1: 0.02, 2: 0.03, 3: 0}
    coordinator = _coordinator(storage, transfer, fast_options, 3 * 1024)
    await coordinator.run()

    assert transfer.completed == [3, 1, 2]
    assert storage.complete_calls[0] == [(1, '"etag-1"'), (2, '"etag-2"'), (3, '"etag-3"')]


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_part_count(storage, transfer, fast_options):
    options = replace(fast_options, max_concurrency=16)
    transfer.delays = {1: 0.01, 2: 0.01}
    await _coordinator(storage, transfer, options, 2 * 1024).run()
    assert transfer.max_active <= 2


@pytest.mark.asyncio
async def test_part_exhausting_attempts_aborts_session(storage, transfer, fast_options):
    transfer.failures = {42: 3}
    coordinator = _coordinator(storage, transfer, fast_options, 50 * 1024)

    with pytest.raises(SessionAbortedException) as exc_info:
        await coordinator.run()

    err = exc_info.value
    assert err.part_number == 42
    assert err.upload_id == "upload-1"
    assert isinstance(err.cause, PartTransferException)
    assert err.abort_error is None
    assert "3 attempt" in err.message
    assert storage.abort_calls == [(KEY, "upload-1")]
    assert storage.complete_calls == []
    assert len(transfer.attempts[42]) == 3
    assert len(set(storage.signed_urls[42])) == 3
    assert coordinator.state is SessionState.ABORTED


@pytest.mark.asyncio
async def test_transient_failure_recovers(storage, transfer, fast_options):
    transfer.failures = {2: 2}
    coordinator = _coordinator(storage, transfer, fast_options, 4 * 1024)
    await coordinator.run()
    assert storage.sign_counts[2] == 3
    assert coordinator.session.part(2).attempts == 3
    assert storage.abort_calls == []


@pytest.mark.asyncio
async def test_retry_backoff_uses_supported_tenacity_arguments(storage, transfer, fast_options):
    transfer.failures = {1: 1}
    coordinator = _coordinator(storage, transfer, fast_options, 2 * 1024)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        await coordinator.run()
    deprecated = [w for w in caught if issubclass(w.category, DeprecationWarning)]
    assert deprecated == []
    assert storage.sign_counts[1] == 2


@pytest.mark.asyncio
async def test_expired_signature_is_resigned(storage, transfer, fast_options):
    transfer.failures = {2: 1}
    transfer.errors = {2: SignatureExpiredException(part_number=2)}
    await _coordinator(storage, transfer, fast_options, 3 * 1024).run()

    urls = transfer.attempts[2]
    assert len(urls) == 2
    assert urls[0] != urls[1]
    assert urls[1].endswith("attempt=2")


@pytest.mark.asyncio
async def test_abort_failure_is_attached(storage, transfer, fast_options):
    transfer.failures = {1: 3}
    storage.fail_abort = RuntimeError("abort endpoint down")
    coordinator = _coordinator(storage, transfer, fast_options, 2 * 1024)

    with pytest.raises(SessionAbortedException) as exc_info:
        await coordinator.run()
    assert isinstance(exc_info.value.abort_error, RuntimeError)
    assert exc_info.value.details["abort_error"] == "abort endpoint down"
    assert coordinator.state is SessionState.ABORTED
    assert len(storage.abort_calls) == 1


@pytest.mark.asyncio
async def test_part_timeout_counts_as_failure(storage, transfer, fast_options):
    options = replace(fast_options, part_timeout_seconds=0.05, part_timeout_max_seconds=0.05)
    transfer.delays = {1: 1.0}
    coordinator = _coordinator(storage, transfer, options, 1024)

    with pytest.raises(SessionAbortedException) as exc_info:
        await coordinator.run()
    assert exc_info.value.part_number == 1
    assert "timed out" in exc_info.value.cause.message
    assert len(transfer.attempts[1]) == 3


@pytest.mark.asyncio
async def test_cancel_aborts_once(storage, transfer, fast_options):
    transfer.delays = {n: 0.05 for n in range(1, 21)}
    coordinator = _coordinator(storage, transfer, fast_options, 20 * 1024)
    outcome = {}

    async def _run():
        try:
            outcome["result"] = await coordinator.run()
        except SessionAbortedException as exc:
            outcome["error"] = exc

    async with anyio.create_task_group() as tg:
        tg.start_soon(_run)
        await anyio.sleep(0.01)
        coordinator.cancel()

    err = outcome["error"]
    assert err.part_number is None
    assert "cancelled" in err.message
    assert storage.abort_calls == [(KEY, "upload-1")]
    assert storage.complete_calls == []
    assert coordinator.state is SessionState.ABORTED


@pytest.mark.asyncio
async def test_external_cancellation_aborts(storage, transfer, fast_options):
    transfer.delays = {n: 0.05 for n in range(1, 9)}
    coordinator = _coordinator(storage, transfer, fast_options, 8 * 1024)

    with anyio.move_on_after(0.01):
        await coordinator.run()

    assert storage.abort_calls == [(KEY, "upload-1")]
    assert coordinator.state is SessionState.ABORTED


@pytest.mark.asyncio
async def test_cancel_before_start_skips_initiate(storage, transfer, fast_options):
    coordinator = _coordinator(storage, transfer, fast_options, 2048)
    coordinator.cancel()
    with pytest.raises(SessionAbortedException):
        await coordinator.run()
    assert storage.calls == []


@pytest.mark.asyncio
async def test_zero_byte_source_rejected_before_initiate(storage, transfer, fast_options):
    coordinator = _coordinator(storage, transfer, fast_options, 0)
    with pytest.raises(InvalidUploadInputException):
        await coordinator.run()
    assert storage.calls == []


@pytest.mark.asyncio
async def test_initiate_failure_classified(storage, transfer, fast_options):
    storage.fail_initiate = RuntimeError("connection refused")
    coordinator = _coordinator(storage, transfer, fast_options, 2048)
    with pytest.raises(StorageProviderException) as exc_info:
        await coordinator.run()
    assert exc_info.value.operation == "initiate_multipart_upload"
    assert not storage.sign_counts
    assert coordinator.state is None


@pytest.mark.asyncio
async def test_failed_completion_leaves_session_for_caller_abort(storage, transfer, fast_options):
    storage.fail_complete = RuntimeError("InternalError")
    coordinator = _coordinator(storage, transfer, fast_options, 2048)

    with pytest.raises(StorageProviderException) as exc_info:
        await coordinator.run()
    assert exc_info.value.operation == "complete_multipart_upload"
    assert coordinator.state is SessionState.COMPLETING
    assert storage.abort_calls == []

    await coordinator.abort()
    assert coordinator.state is SessionState.ABORTED
    assert storage.abort_calls == [(KEY, "upload-1")]


@pytest.mark.asyncio
async def test_completion_rejected_locally_with_missing_etags(storage, transfer, fast_options):
    coordinator = _coordinator(storage, transfer, fast_options, 3 * 1024)
    coordinator.session = MultipartSession.plan("upload-1", KEY, 3 * 1024, 1024)
    coordinator.session.mark_in_flight()
    coordinator.session.record_etag(1, "e1")

    with pytest.raises(InvalidUploadInputException) as exc_info:
        await coordinator.complete()
    assert exc_info.value.details["missing_parts"] == [2, 3]
    assert storage.complete_calls == []


@pytest.mark.asyncio
async def test_attach_to_existing_upload_id(storage, transfer, fast_options):
    coordinator = _coordinator(storage, transfer, fast_options, 2048, upload_id="server-upload")
    result = await coordinator.run()
    assert "initiate_multipart_upload" not in storage.calls
    assert result.upload_id == "server-upload"
    assert all("uploadId=server-upload" in urls[0] for urls in storage.signed_urls.values())


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_reaches_100(storage, transfer, fast_options):
    transfer.failures = {3: 1}
    transfer.delays = {1: 0.01, 2: 0.005}
    size = 5 * 1024 + 100
    progress = ProgressAggregator(size)
    seen = []
    progress.subscribe(lambda p: seen.append(p.bytes_transferred))

    await _coordinator(storage, transfer, fast_options, size, progress=progress).run()

    assert seen == sorted(seen)
    assert seen[-1] == size
    assert progress.current_progress().percentage == 100


def test_part_timeout_scales_with_size_and_is_capped():
    options = MultipartOptions(part_timeout_seconds=60, part_timeout_max_seconds=600)
    gib = 1024 * 1024 * 1024
    assert options.part_timeout(10) == 60
    assert options.part_timeout(4 * gib) == 240
    assert options.part_timeout(50 * gib) == 600
