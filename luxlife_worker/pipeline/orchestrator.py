"""
OrderWorkflow — the order state machine.

  pending → queued_validation → queued_generation
          → generating_background → processing → complete
  any non-terminal state → failed

Two handlers drive it, one per trigger:
  handle_order_created   validate fields, debit one credit, check the upload
  handle_generation      background (with fallback) → voice → animation
                         → compose → upload → complete

Both may be delivered more than once.  Each starts with a compare-and-set
claim on the order row, so a duplicate delivery finds the claim taken and
does nothing.  `credit_status` records whether the credit was taken, which
makes the refund a claim of its own: it can only happen once.
"""

import logging
import time
from pathlib import Path
from typing import Optional

from luxlife_worker import metrics
from luxlife_worker.config import Settings, get_settings
from luxlife_worker.presets import build_background_prompt, build_voice_script, scene_label
from .animate import DIDAnimator
from .background import ReplicateClient, generate_background
from .compose import MediaComposer, ScratchDir
from .errors import ConfigError, CreditError, PipelineError, UnknownError, ValidationError
from .ledger import CreditLedger
from .models import CreditStatus, Order, OrderStatus, StageState, utcnow
from .notify import ResendEmailSender, notify_order_status
from .repository import OrderRepository
from .storage import R2Storage, order_video_key
from .voice import GoogleVoiceSynthesizer

logger = logging.getLogger(__name__)

TASK_ORDER_CREATED = "order_created"
TASK_ORDER_GENERATION = "order_generation"

MISSING_FILE_NOTICE = "Portrait upload was missing. Please retry the upload."


def route_change(before: Optional[dict], after: Optional[dict]) -> Optional[tuple[str, str]]:
    """
    Map an orders-table change notification to (task_type, order_id).

    Inserts start validation; an update that moves the order into
    queued_generation starts generation.  Everything else is ignored.
    """
    if not after or not after.get("id"):
        return None

    if before is None:
        return TASK_ORDER_CREATED, after["id"]

    new_status = after.get("status")
    if new_status == OrderStatus.QUEUED_GENERATION.value and before.get("status") != new_status:
        return TASK_ORDER_GENERATION, after["id"]

    return None


class OrderWorkflow:
    """
    Usage:
        workflow = OrderWorkflow(repository, ledger, storage)

        await workflow.handle_order_created(order_id)
        await workflow.handle_generation(order_id)

    Provider adapters are built from settings on first use unless injected.
    """

    def __init__(
        self,
        repository: OrderRepository,
        ledger: CreditLedger,
        storage: Optional[R2Storage] = None,
        settings: Optional[Settings] = None,
        background: Optional[ReplicateClient] = None,
        voice: Optional[GoogleVoiceSynthesizer] = None,
        animator: Optional[DIDAnimator] = None,
        composer: Optional[MediaComposer] = None,
        email: Optional[ResendEmailSender] = None,
        chain_generation: bool = False,
    ):
        self.repository = repository
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.chain_generation = chain_generation
        self._storage = storage
        self._background = background
        self._voice = voice
        self._animator = animator
        self._composer = composer
        self._email = email

    # ── Adapters (lazy) ──────────────────────────────────────────────────

    @property
    def storage(self) -> R2Storage:
        if self._storage is None:
            self._storage = R2Storage(self.settings)
        return self._storage

    @property
    def background(self) -> ReplicateClient:
        if self._background is None:
            self._background = ReplicateClient(
                self.settings.replicate_api_token, self.settings.replicate_model_version
            )
        return self._background

    @property
    def voice(self) -> GoogleVoiceSynthesizer:
        if self._voice is None:
            self._voice = GoogleVoiceSynthesizer(self.settings.google_api_key)
        return self._voice

    @property
    def animator(self) -> DIDAnimator:
        if self._animator is None:
            self._animator = DIDAnimator(self.settings.did_api_key)
        return self._animator

    @property
    def composer(self) -> MediaComposer:
        if self._composer is None:
            self._composer = MediaComposer()
        return self._composer

    @property
    def email(self) -> ResendEmailSender:
        if self._email is None:
            self._email = ResendEmailSender(self.settings.resend_api_key, self.settings.resend_from_email)
        return self._email

    # ── Dispatch ─────────────────────────────────────────────────────────

    async def run_task(self, task_type: str, order_id: str):
        if task_type == TASK_ORDER_CREATED:
            await self.handle_order_created(order_id)
        elif task_type == TASK_ORDER_GENERATION:
            await self.handle_generation(order_id)
        else:
            raise ValueError(f"Unknown task type '{task_type}'")

    async def dispatch_change(self, before: Optional[dict], after: Optional[dict]) -> Optional[str]:
        """Run the handler for a change notification; returns the task type run, if any."""
        routed = route_change(before, after)
        if routed is None:
            return None
        task_type, order_id = routed
        await self.run_task(task_type, order_id)
        return task_type

    # ── Shared steps ─────────────────────────────────────────────────────

    async def refund(self, order: Order) -> bool:
        """Give the order's credit back, at most once per order."""
        claimed = await self.repository.compare_and_set_credit(
            order.id, CreditStatus.DEBITED, CreditStatus.REFUNDED
        )
        if not claimed and order.credit_status == CreditStatus.DEBITED:
            # debited by this run, but the row never got past debiting
            claimed = await self.repository.compare_and_set_credit(
                order.id, CreditStatus.DEBITING, CreditStatus.REFUNDED
            )
        if not claimed:
            logger.info(f"[{order.id}] No refund: credit not debited or already refunded")
            return False

        order.credit_status = CreditStatus.REFUNDED
        refunded = await self.ledger.credit(order.uid, order.id)
        metrics.inc_counter("credits.refunded")
        logger.info(f"[{order.id}] Credit refunded to {order.uid} (ledger updated={refunded})")
        return True

    async def _notify(self, order: Order, details: Optional[str] = None):
        await notify_order_status(self.email, order, self.settings.dashboard_url, details)

    async def _fail(
        self,
        order: Order,
        stage: str,
        code: str,
        message: str,
        notice: Optional[str] = None,
    ):
        order.mark_failed(code, message)
        await self.repository.save(order)
        metrics.record_error(stage, code, message, order.id)
        logger.warning(f"[{order.id}] Order failed in {stage}: {code}: {message}")
        await self._notify(order, notice)

    # ── Validation ───────────────────────────────────────────────────────

    async def handle_order_created(self, order_id: str):
        order = await self.repository.get(order_id)
        if order is None:
            logger.warning(f"[{order_id}] Order not found; nothing to validate")
            return
        if order.status != OrderStatus.PENDING:
            logger.info(f"[{order_id}] Skipping validation: status is {order.status.value}")
            return

        if order.credit_status == CreditStatus.DEBITED:
            # An earlier delivery took the credit and stopped before the order moved on.
            logger.warning(f"[{order_id}] Credit already debited; resuming validation")
            if await self._validate_upload(order) and self.chain_generation:
                await self.handle_generation(order_id)
            return

        metrics.inc_counter("orders.created")

        try:
            self._require_fields(order)
        except ValidationError as e:
            if not await self.repository.compare_and_set_status(order.id, OrderStatus.PENDING, OrderStatus.FAILED):
                logger.info(f"[{order_id}] Missing-field failure already handled by another delivery")
                return
            order.pipeline.validation.mark(StageState.FAILED, "Order is missing required fields.")
            await self._fail(order, "validation", e.code, e.message)
            return

        # Claim the debit before touching the ledger.
        if not await self.repository.compare_and_set_credit(order.id, CreditStatus.NONE, CreditStatus.DEBITING):
            logger.info(f"[{order_id}] Debit already claimed by another delivery")
            return
        order.credit_status = CreditStatus.DEBITING

        try:
            balance = await self.ledger.debit(order.uid, order.id)
        except CreditError as e:
            await self._release_debit_claim(order)
            order.pipeline.validation.mark(StageState.FAILED, e.message)
            await self._fail(order, "validation", e.code, e.message)
            return
        except Exception as e:
            logger.error(f"[{order_id}] Debit failed: {e}", exc_info=True)
            await self._release_debit_claim(order)
            order.pipeline.validation.mark(StageState.FAILED, str(e))
            await self._fail(order, "validation", "validation_error", str(e))
            return

        order.credit_status = CreditStatus.DEBITED
        logger.info(f"[{order_id}] Debited 1 credit from {order.uid} (balance now {balance})")

        if await self._validate_upload(order) and self.chain_generation:
            await self.handle_generation(order_id)

    def _require_fields(self, order: Order):
        missing = order.missing_fields()
        if missing:
            raise ValidationError(
                f"Order is missing required fields: {', '.join(missing)}",
                code="validation_missing_fields",
            )

    async def _validate_upload(self, order: Order) -> bool:
        """
        Record the debit and check the portrait upload.

        The credit is already taken when this runs, so every failure path
        refunds it.  Returns True once the order is queued for generation.
        """
        try:
            await self.repository.compare_and_set_credit(order.id, CreditStatus.DEBITING, CreditStatus.DEBITED)
            if not await self.repository.compare_and_set_status(
                order.id, OrderStatus.PENDING, OrderStatus.QUEUED_VALIDATION
            ):
                logger.info(f"[{order.id}] Validation already claimed by another delivery")
                return False
            order.advance(OrderStatus.QUEUED_VALIDATION)
            order.pipeline.received_at = utcnow()
            order.pipeline.validation.mark(StageState.RUNNING)
            await self.repository.save(order)

            if not await self.storage.exists(order.source_path):
                raise ValidationError(
                    f"Source file {order.source_path} not found in storage.",
                    code="validation_missing_file",
                )

            order.pipeline.validation.mark(StageState.COMPLETE)
            order.advance(OrderStatus.QUEUED_GENERATION)
            await self.repository.save(order)
            logger.info(f"[{order.id}] Validated; queued for generation")
            return True
        except ValidationError as e:
            await self.refund(order)
            order.pipeline.validation.mark(StageState.FAILED, "Source file missing from storage.")
            await self._fail(order, "validation", e.code, e.message, notice=MISSING_FILE_NOTICE)
        except Exception as e:
            logger.error(f"[{order.id}] Validation error: {e}", exc_info=True)
            await self.refund(order)
            order.pipeline.validation.mark(StageState.FAILED, str(e))
            await self._fail(order, "validation", "validation_error", str(e))
        return False

    async def _release_debit_claim(self, order: Order):
        await self.repository.compare_and_set_credit(order.id, CreditStatus.DEBITING, CreditStatus.NONE)
        order.credit_status = CreditStatus.NONE

    # ── Generation ───────────────────────────────────────────────────────

    async def handle_generation(self, order_id: str):
        order = await self.repository.get(order_id)
        if order is None:
            logger.warning(f"[{order_id}] Order not found; nothing to generate")
            return

        claimed = await self.repository.compare_and_set_status(
            order_id, OrderStatus.QUEUED_GENERATION, OrderStatus.GENERATING_BACKGROUND
        )
        if not claimed:
            logger.info(f"[{order_id}] Skipping generation: status is {order.status.value}")
            return
        order.advance(OrderStatus.GENERATING_BACKGROUND)

        try:
            self._require_generation_config()
        except ConfigError as e:
            order.pipeline.generation.mark(StageState.FAILED, e.message)
            await self.refund(order)
            await self._fail(order, "generation", e.code, e.message)
            return

        started = time.monotonic()
        with ScratchDir(prefix=f"luxlife-{order_id}-") as workdir:
            try:
                await self._generate(order, workdir)
            except Exception as e:
                error = e if isinstance(e, PipelineError) else UnknownError(str(e))
                logger.error(f"[{order_id}] Generation pipeline failed ({error.code}): {error}", exc_info=True)
                metrics.inc_counter(f"generation_failures.{error.code}")
                self._fail_running_stages(order, error.message)
                await self.refund(order)
                await self._fail(order, "generation", "generation_pipeline_error", error.message)
                return

        metrics.record_latency("generation", (time.monotonic() - started) * 1000)
        metrics.inc_counter("orders.completed")
        logger.info(f"[{order_id}] Order complete: {order.video_url}")
        await self._notify(order)

    def _require_generation_config(self):
        missing = self.settings.missing_generation_config()
        if missing:
            code, message = missing
            raise ConfigError(message, code=code)

    def _fail_running_stages(self, order: Order, message: str):
        p = order.pipeline
        for stage in (p.generation, p.voice, p.animation):
            if stage.state == StageState.RUNNING:
                stage.mark(StageState.FAILED, message)

    async def _generate(self, order: Order, workdir: Path):
        p = order.pipeline
        label = scene_label(order.scene, order.scene_id)

        # ── Background (may fall back) ───────────────────────────────
        prompt = build_background_prompt(order.scene, order.scene_id, order.tagline, order.prompt)
        p.generation.prompt = prompt
        p.generation.mark(StageState.RUNNING)
        await self.repository.save(order)

        result = await generate_background(self.background, prompt, order.id)
        p.generation.background = result.record
        p.generation.fallback = result.fallback
        p.generation.mark(StageState.COMPLETE, result.fallback.reason if result.fallback.used else None)
        if result.fallback.used:
            metrics.inc_counter(f"fallback.{result.fallback.reason_code.value}")

        order.advance(OrderStatus.PROCESSING)
        await self.repository.save(order)

        # ── Voice-over ───────────────────────────────────────────────
        script = build_voice_script(order.tagline, label)
        p.voice.script = script
        p.voice.mark(StageState.RUNNING)

        audio = await self.voice.synthesize(script)
        audio_path = workdir / "voice.mp3"
        audio_path.write_bytes(audio)

        audio_key = order_video_key(order.uid, order.id, "voice.mp3")
        await self.storage.upload_file(audio_path, audio_key, "audio/mpeg")
        audio_url = await self.storage.signed_url(audio_key)
        p.voice.storage_path = audio_key
        p.voice.mark(StageState.COMPLETE)
        await self.repository.save(order)

        # ── Animation ────────────────────────────────────────────────
        image_url = await self.storage.signed_url(order.source_path)
        p.animation.mark(StageState.RUNNING)
        talk = await self.animator.submit(image_url, audio_url)
        p.animation.talk_id = talk.id
        await self.repository.save(order)

        talk = await self.animator.poll(talk)
        if talk.status != "done" or not talk.result_url:
            raise PipelineError(talk.error or "did_generation_failed")
        p.animation.result_url = talk.result_url
        p.animation.mark(StageState.COMPLETE)

        # ── Compose + deliver ────────────────────────────────────────
        final_path = await self.composer.compose(
            result.video_url, talk.result_url, audio_path, order.id, workdir
        )
        final_key = order_video_key(order.uid, order.id, "final.mp4")
        video_url = await self.storage.upload_file(final_path, final_key, "video/mp4")

        # the in-memory order stays non-terminal until the row says complete
        completed = order.model_copy(deep=True)
        completed.mark_complete(video_url)
        await self.repository.save(completed)
        order.mark_complete(video_url)
