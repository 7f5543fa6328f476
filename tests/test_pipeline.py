from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import timedelta

import allure
import pytest

from todo_bot.collaborators.base import PermanentCollaboratorError, TransientCollaboratorError
from todo_bot.queue.models import (
    BatchView,
    CloseReason,
    FailureClass,
    MessageCreate,
    MessageView,
    TaskItem,
)
from todo_bot.queue.pipeline import (
    DELIVERY_STAGE,
    EXTRACTION_STAGE,
    DeliveryPipeline,
    build_extraction_text,
)
from todo_bot.queue.repository import QueueRepository
from todo_bot.storage.common import utc_now

pytestmark = [
    allure.epic("Message Queue"),
    allure.feature("Delivery Pipeline"),
]


def _claimed(repository: QueueRepository, texts: list[str]) -> BatchView:
    for position, text in enumerate(texts):
        repository.save_message(
            MessageCreate(
                message_id=f"m{position}",
                conversation_id="c1",
                text=text,
                received_at=utc_now(),
            ),
            batch_id="b1",
            position=position,
        )
    repository.close_batch(batch_id="b1", reason=CloseReason.FLUSH)
    claimed = repository.claim_batch(batch_id="b1", worker_id="w1")
    assert claimed is not None
    return claimed


@pytest.fixture()
def make_pipeline(repository: QueueRepository) -> Iterator[Callable[..., DeliveryPipeline]]:
    pipelines: list[DeliveryPipeline] = []

    def _factory(extractor: object, sink: object, timeout: float = 5.0) -> DeliveryPipeline:
        pipeline = DeliveryPipeline(
            repository=repository,
            extractor=extractor,  # type: ignore[arg-type]
            sink=sink,  # type: ignore[arg-type]
            attempt_timeout_seconds=timeout,
        )
        pipelines.append(pipeline)
        return pipeline

    yield _factory
    for pipeline in pipelines:
        pipeline.close()


def test_extraction_text_follows_receipt_order_and_skips_blanks() -> None:
    now = utc_now()
    messages = [
        MessageView("m2", "c1", "b1", 2, "  call mom ", now, now),
        MessageView("m0", "c1", "b1", 0, "buy milk", now, now),
        MessageView("m1", "c1", "b1", 1, "   ", now, now),
    ]

    assert build_extraction_text(messages) == "buy milk\ncall mom"
    assert build_extraction_text([]) == ""


def test_successful_attempt_appends_and_records_receipt(
    repository: QueueRepository,
    make_pipeline,
    scripted_extractor,
    recording_sink,
) -> None:
    extractor = scripted_extractor()
    sink = recording_sink()
    batch = _claimed(repository, ["buy milk", "call mom"])

    result = make_pipeline(extractor, sink).process(
        batch,
        repository.get_batch_messages(batch_id="b1"),
    )

    assert result.ok
    assert [item.title for item in result.items] == ["buy milk", "call mom"]
    assert extractor.calls == ["buy milk\ncall mom"]
    assert sink.batch_ids == ["b1"]
    stored = repository.get_batch(batch_id="b1")
    assert stored.delivered_at is not None
    assert stored.delivered_item_count == 2


def test_extraction_failure_never_reaches_the_sink(
    repository: QueueRepository,
    make_pipeline,
    scripted_extractor,
    recording_sink,
) -> None:
    extractor = scripted_extractor([TransientCollaboratorError("HTTP 503", reason_code="http_503")])
    sink = recording_sink()
    batch = _claimed(repository, ["buy milk"])

    result = make_pipeline(extractor, sink).process(
        batch,
        repository.get_batch_messages(batch_id="b1"),
    )

    assert not result.ok
    assert result.stage == EXTRACTION_STAGE
    assert result.error is not None
    assert result.error.failure_class == FailureClass.COLLABORATOR_TRANSIENT
    assert sink.appended == []
    assert repository.get_batch(batch_id="b1").delivered_at is None


def test_sink_failure_is_classified_at_delivery_stage(
    repository: QueueRepository,
    make_pipeline,
    scripted_extractor,
    recording_sink,
) -> None:
    sink = recording_sink([PermanentCollaboratorError("HTTP 403 Forbidden")])
    batch = _claimed(repository, ["buy milk"])

    result = make_pipeline(scripted_extractor(), sink).process(
        batch,
        repository.get_batch_messages(batch_id="b1"),
    )

    assert result.stage == DELIVERY_STAGE
    assert result.error is not None
    assert result.error.failure_class == FailureClass.ACCESS_OR_AUTH
    assert [item.title for item in result.items] == ["buy milk"]


def test_empty_extraction_skips_sink_but_counts_as_delivered(
    repository: QueueRepository,
    make_pipeline,
    scripted_extractor,
    recording_sink,
) -> None:
    sink = recording_sink()
    batch = _claimed(repository, ["thanks!"])

    result = make_pipeline(scripted_extractor([[]]), sink).process(
        batch,
        repository.get_batch_messages(batch_id="b1"),
    )

    assert result.ok
    assert result.items == []
    assert sink.appended == []
    assert repository.get_batch(batch_id="b1").delivered_item_count == 0


def test_existing_receipt_skips_both_collaborators(
    repository: QueueRepository,
    make_pipeline,
    scripted_extractor,
    recording_sink,
) -> None:
    extractor = scripted_extractor()
    sink = recording_sink()
    batch = _claimed(repository, ["buy milk"])
    repository.mark_delivered(batch_id="b1", item_count=1)

    result = make_pipeline(extractor, sink).process(
        batch,
        repository.get_batch_messages(batch_id="b1"),
    )

    assert result.ok
    assert result.delivery_skipped is True
    assert extractor.calls == []
    assert sink.appended == []


def test_slow_collaborator_is_cut_off_as_timeout(
    repository: QueueRepository,
    make_pipeline,
    recording_sink,
) -> None:
    release = threading.Event()

    class _StuckExtractor:
        def extract(self, text: str) -> list[TaskItem]:
            release.wait(timeout=5)
            return [TaskItem(title=text)]

    sink = recording_sink()
    batch = _claimed(repository, ["buy milk"])
    started = utc_now()

    try:
        result = make_pipeline(_StuckExtractor(), sink, timeout=0.2).process(
            batch,
            repository.get_batch_messages(batch_id="b1"),
        )
    finally:
        release.set()

    assert utc_now() - started < timedelta(seconds=3)
    assert result.error is not None
    assert result.error.failure_class == FailureClass.TIMEOUT
    assert result.error.retryable
    assert sink.appended == []


def test_timed_out_append_keeps_batch_busy_and_records_late_receipt(
    repository: QueueRepository,
    make_pipeline,
    scripted_extractor,
) -> None:
    release = threading.Event()
    appended: list[str] = []

    class _StuckSink:
        def append(self, batch_id: str, items: list[TaskItem]) -> None:
            release.wait(timeout=5)
            appended.append(batch_id)

    batch = _claimed(repository, ["buy milk"])
    pipeline = make_pipeline(scripted_extractor(), _StuckSink(), timeout=0.1)

    try:
        result = pipeline.process(batch, repository.get_batch_messages(batch_id="b1"))

        assert result.error is not None
        assert result.error.failure_class == FailureClass.TIMEOUT
        assert result.stage == DELIVERY_STAGE
        assert pipeline.has_pending_call("b1")
        assert repository.get_batch(batch_id="b1").delivered_at is None
    finally:
        release.set()
    pipeline.close(timeout=5)

    assert not pipeline.has_pending_call("b1")
    assert appended == ["b1"]
    stored = repository.get_batch(batch_id="b1")
    assert stored.delivered_at is not None
    assert stored.delivered_item_count == 1
