"""
Pydantic models and enums for the order pipeline.

The Order aggregate mirrors one row of the `orders` table; the nested
pipeline record is stored as a single jsonb column and always written as a
whole, never through string-keyed partial paths.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from .errors import StatusTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Order Status ─────────────────────────────────────────────────────────────

class OrderStatus(str, Enum):
    PENDING = "pending"
    QUEUED_VALIDATION = "queued_validation"
    QUEUED_GENERATION = "queued_generation"
    GENERATING_BACKGROUND = "generating_background"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETE, OrderStatus.FAILED)


STATUS_ORDER = [
    OrderStatus.PENDING,
    OrderStatus.QUEUED_VALIDATION,
    OrderStatus.QUEUED_GENERATION,
    OrderStatus.GENERATING_BACKGROUND,
    OrderStatus.PROCESSING,
    OrderStatus.COMPLETE,
]


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """Forward-only along STATUS_ORDER; FAILED is reachable from any non-terminal state."""
    if current.is_terminal:
        return False
    if new == OrderStatus.FAILED:
        return True
    return STATUS_ORDER.index(new) > STATUS_ORDER.index(current)


class CreditStatus(str, Enum):
    NONE = "none"
    DEBITING = "debiting"
    DEBITED = "debited"
    REFUNDED = "refunded"


class StageState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


# ── Fallback ─────────────────────────────────────────────────────────────────

class FallbackStrategy(str, Enum):
    ANIMATION_ONLY = "animation_only"


class FallbackReason(str, Enum):
    REPLICATE_INSUFFICIENT_CREDITS = "replicate_insufficient_credits"
    REPLICATE_GENERATION_FAILED = "replicate_generation_failed"
    REPLICATE_RETURNED_IMAGE = "replicate_returned_image"


FALLBACK_MESSAGES = {
    FallbackReason.REPLICATE_INSUFFICIENT_CREDITS: "Background generator credits are currently exhausted.",
    FallbackReason.REPLICATE_GENERATION_FAILED: "Background generator unavailable; delivered animation-only.",
    FallbackReason.REPLICATE_RETURNED_IMAGE: "Background generator returned a still image.",
}


class FallbackRecord(BaseModel):
    used: bool = False
    reason_code: Optional[FallbackReason] = None
    reason: Optional[str] = None
    details: Optional[str] = None
    strategy: Optional[FallbackStrategy] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _used_requires_reason_and_strategy(self):
        if self.used and (self.reason_code is None or self.strategy is None):
            raise ValueError("fallback.used requires reason_code and strategy")
        return self

    @classmethod
    def engaged(cls, reason_code: FallbackReason, details: Optional[str] = None) -> "FallbackRecord":
        return cls(
            used=True,
            reason_code=reason_code,
            reason=FALLBACK_MESSAGES[reason_code],
            details=details,
            strategy=FallbackStrategy.ANIMATION_ONLY,
            updated_at=utcnow(),
        )


# ── Pipeline Records ─────────────────────────────────────────────────────────

class StageRecord(BaseModel):
    state: StageState = StageState.PENDING
    updated_at: Optional[datetime] = None
    message: Optional[str] = None

    def mark(self, state: StageState, message: Optional[str] = None):
        self.state = state
        self.message = message
        self.updated_at = utcnow()


class BackgroundJobRecord(BaseModel):
    prediction_id: Optional[str] = None
    model_version: Optional[str] = None
    status: str = "skipped"
    output: Optional[list[Any]] = None
    error: Optional[str] = None
    get_url: Optional[str] = None
    cancel_url: Optional[str] = None
    updated_at: Optional[datetime] = None


class GenerationStage(StageRecord):
    prompt: Optional[str] = None
    background: BackgroundJobRecord = Field(default_factory=BackgroundJobRecord)
    fallback: FallbackRecord = Field(default_factory=FallbackRecord)


class VoiceStage(StageRecord):
    script: Optional[str] = None
    storage_path: Optional[str] = None


class AnimationStage(StageRecord):
    talk_id: Optional[str] = None
    result_url: Optional[str] = None


class Pipeline(BaseModel):
    received_at: Optional[datetime] = None
    validation: StageRecord = Field(default_factory=StageRecord)
    generation: GenerationStage = Field(default_factory=GenerationStage)
    voice: VoiceStage = Field(default_factory=VoiceStage)
    animation: AnimationStage = Field(default_factory=AnimationStage)


# ── Order ────────────────────────────────────────────────────────────────────

REQUIRED_ORDER_FIELDS = ("uid", "source_path")


class Order(BaseModel):
    id: str
    uid: Optional[str] = None
    email: Optional[str] = None
    scene: Optional[str] = None
    scene_id: Optional[str] = None
    tagline: Optional[str] = None
    prompt: Optional[str] = None
    source_path: Optional[str] = None

    status: OrderStatus = OrderStatus.PENDING
    credit_status: CreditStatus = CreditStatus.NONE
    pipeline: Pipeline = Field(default_factory=Pipeline)

    video_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def missing_fields(self) -> list[str]:
        return [name for name in REQUIRED_ORDER_FIELDS if not getattr(self, name)]

    def advance(self, new: OrderStatus):
        """Move to `new`, refusing anything the state machine does not allow."""
        if not can_transition(self.status, new):
            raise StatusTransitionError(
                f"Order {self.id} cannot move from {self.status.value} to {new.value}"
            )
        self.status = new

    def mark_failed(self, code: str, message: str):
        self.advance(OrderStatus.FAILED)
        self.error_code = code
        self.error_message = message
        self.video_url = None

    def mark_complete(self, video_url: str):
        self.advance(OrderStatus.COMPLETE)
        self.video_url = video_url
        self.error_code = None
        self.error_message = None

    @classmethod
    def from_row(cls, row: dict) -> "Order":
        """Build an Order from a document-store row (unknown columns are ignored)."""
        data = {k: v for k, v in row.items() if k in cls.model_fields and v is not None}
        return cls.model_validate(data)

    def mutable_fields(self) -> dict:
        """Columns the workflow is allowed to write; input fields are never included."""
        return self.model_dump(
            mode="json",
            include={
                "status",
                "credit_status",
                "pipeline",
                "video_url",
                "error_code",
                "error_message",
                "updated_at",
            },
        )


# ── API Models ───────────────────────────────────────────────────────────────

class OrderChangeEvent(BaseModel):
    """Supabase database-webhook payload for the orders table."""
    type: str  # INSERT, UPDATE, DELETE
    table: str = "orders"
    record: Optional[dict] = None
    old_record: Optional[dict] = None


class OrderStatusResponse(BaseModel):
    order_id: str
    status: OrderStatus
    video_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    fallback: FallbackRecord = Field(default_factory=FallbackRecord)
    updated_at: Optional[datetime] = None
