import pytest
from pydantic import ValidationError

from luxlife_worker.pipeline.errors import StatusTransitionError
from luxlife_worker.pipeline.models import (
    FallbackReason,
    FallbackRecord,
    Order,
    OrderStatus,
    StageState,
    can_transition,
)

pytestmark = pytest.mark.unit


def test_transitions_are_forward_only():
    assert can_transition(OrderStatus.PENDING, OrderStatus.QUEUED_VALIDATION)
    assert can_transition(OrderStatus.QUEUED_GENERATION, OrderStatus.PROCESSING)
    assert not can_transition(OrderStatus.PROCESSING, OrderStatus.QUEUED_GENERATION)
    assert can_transition(OrderStatus.PROCESSING, OrderStatus.FAILED)
    assert not can_transition(OrderStatus.COMPLETE, OrderStatus.FAILED)
    assert not can_transition(OrderStatus.FAILED, OrderStatus.COMPLETE)


def test_order_refuses_backward_and_post_terminal_moves():
    order = Order(id="o1", status=OrderStatus.PROCESSING)
    with pytest.raises(StatusTransitionError):
        order.advance(OrderStatus.QUEUED_GENERATION)
    assert order.status == OrderStatus.PROCESSING

    order.mark_complete("https://cdn.test/final.mp4")
    with pytest.raises(StatusTransitionError):
        order.mark_failed("generation_pipeline_error", "late")
    assert order.status == OrderStatus.COMPLETE
    assert order.error_code is None


def test_used_fallback_requires_reason_and_strategy():
    with pytest.raises(ValidationError):
        FallbackRecord(used=True)

    record = FallbackRecord.engaged(FallbackReason.REPLICATE_GENERATION_FAILED, details="timeout")
    assert record.strategy.value == "animation_only"
    assert record.reason == "Background generator unavailable; delivered animation-only."


def test_missing_fields():
    assert Order(id="o1").missing_fields() == ["uid", "source_path"]
    assert Order(id="o1", uid="u", source_path="p").missing_fields() == []


def test_output_only_on_complete():
    order = Order(id="o1")
    order.mark_complete("https://cdn.test/final.mp4")
    assert order.video_url and order.status == OrderStatus.COMPLETE

    order = Order(id="o2", video_url="stale")
    order.mark_failed("generation_pipeline_error", "boom")
    assert order.video_url is None
    assert order.error_code == "generation_pipeline_error"


def test_from_row_ignores_unknown_and_null_columns():
    order = Order.from_row({"id": "o1", "status": "processing", "pipeline": None, "extra": True})
    assert order.status == OrderStatus.PROCESSING
    assert order.pipeline.validation.state == StageState.PENDING


def test_mutable_fields_excludes_inputs():
    fields = Order(id="o1", uid="u", tagline="t").mutable_fields()
    assert "tagline" not in fields and "uid" not in fields and "id" not in fields
    assert fields["status"] == "pending"
