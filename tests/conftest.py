from pathlib import Path
from typing import Optional

import pytest

from luxlife_worker import fallback_limiter, metrics
from luxlife_worker.config import Settings
from luxlife_worker.pipeline.animate import Talk
from luxlife_worker.pipeline.background import BackgroundJob
from luxlife_worker.pipeline.ledger import InMemoryCreditLedger
from luxlife_worker.pipeline.models import Order
from luxlife_worker.pipeline.orchestrator import OrderWorkflow
from luxlife_worker.pipeline.repository import InMemoryOrderRepository

SOURCE_PATH = "uploads/user-1/order-1/source.jpg"


def pytest_configure(config):
    """Add custom markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: API tests")


@pytest.fixture(autouse=True)
def reset_process_state():
    metrics.reset()
    fallback_limiter.reset()
    yield
    fallback_limiter.reset()


def make_order(**overrides) -> Order:
    data = {
        "id": "order-1",
        "uid": "user-1",
        "email": "ava@example.com",
        "scene": "Rooftop Sunset",
        "scene_id": "rooftop-sunset",
        "tagline": "Living my best life",
        "source_path": SOURCE_PATH,
    }
    data.update(overrides)
    return Order(**data)


@pytest.fixture
def order_factory():
    return make_order


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        supabase_url="https://db.test",
        supabase_service_role_key="service-key",
        replicate_api_token="r8-token",
        replicate_model_version="model-v1",
        did_api_key="did-key",
        google_api_key="google-key",
        resend_api_key="resend-key",
        r2_account_id="acct",
        r2_access_key_id="key-id",
        r2_secret_access_key="secret",
        r2_public_url="https://cdn.test",
    )


# ── Fakes ─────────────────────────────────────────────────────────────────────

class FakeStorage:
    def __init__(self, existing=(), fail_exists: Optional[Exception] = None):
        self.objects = set(existing)
        self.uploads: list[tuple[str, str, bytes]] = []
        self.signed: list[str] = []
        self.fail_exists = fail_exists

    async def exists(self, key: str) -> bool:
        if self.fail_exists:
            raise self.fail_exists
        return key in self.objects

    async def upload_file(self, local_path: Path, key: str, content_type: str) -> str:
        self.uploads.append((key, content_type, Path(local_path).read_bytes()))
        self.objects.add(key)
        return f"https://cdn.test/{key}?token=tok"

    async def signed_url(self, key: str, expires_in: int = 3600) -> str:
        self.signed.append(key)
        return f"https://signed.test/{key}"


class FakeBackground:
    model_version = "model-v1"

    def __init__(self, final: Optional[BackgroundJob] = None, submit_error: Optional[Exception] = None):
        self.final = final or BackgroundJob(
            id="pred-1", status="succeeded", output=["https://replicate.test/bg.mp4"]
        )
        self.submit_error = submit_error
        self.prompts: list[str] = []

    async def submit(self, prompt: str) -> BackgroundJob:
        self.prompts.append(prompt)
        if self.submit_error:
            raise self.submit_error
        return BackgroundJob(id="pred-1", status="starting", urls={"get": "https://replicate.test/p/pred-1"})

    async def poll(self, job: BackgroundJob) -> BackgroundJob:
        return self.final


class FakeVoice:
    def __init__(self, audio: bytes = b"ID3-mp3-bytes"):
        self.audio = audio
        self.scripts: list[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.scripts.append(text)
        return self.audio


class FakeAnimator:
    def __init__(self, final: Optional[Talk] = None, poll_error: Optional[Exception] = None):
        self.final = final or Talk(id="talk-1", status="done", result_url="https://d-id.test/talk-1.mp4")
        self.poll_error = poll_error
        self.submitted: list[tuple[str, str]] = []

    async def submit(self, image_url: str, audio_url: str) -> Talk:
        self.submitted.append((image_url, audio_url))
        return Talk(id="talk-1", status="created")

    async def poll(self, talk: Talk) -> Talk:
        if self.poll_error:
            raise self.poll_error
        return self.final


class FakeComposer:
    def __init__(self, error: Optional[Exception] = None):
        self.calls: list[dict] = []
        self.error = error

    async def compose(self, background_url, animation_url, audio_path, order_id, workdir):
        self.calls.append({
            "background_url": background_url,
            "animation_url": animation_url,
            "audio_path": audio_path,
            "workdir": workdir,
        })
        if self.error:
            raise self.error
        output = workdir / f"{order_id}-final.mp4"
        output.write_bytes(b"mp4")
        return output


class FakeEmail:
    def __init__(self, error: Optional[Exception] = None):
        self.sent = []
        self.error = error

    async def send(self, message):
        if self.error:
            raise self.error
        self.sent.append(message)
        return f"email-{len(self.sent)}"


# ── Workflow fixture ──────────────────────────────────────────────────────────

class WorkflowHarness:
    def __init__(self, settings: Settings):
        self.repository = InMemoryOrderRepository()
        self.ledger = InMemoryCreditLedger({"user-1": 3})
        self.storage = FakeStorage(existing={SOURCE_PATH})
        self.background = FakeBackground()
        self.voice = FakeVoice()
        self.animator = FakeAnimator()
        self.composer = FakeComposer()
        self.email = FakeEmail()
        self.settings = settings

    def build(self, **overrides) -> OrderWorkflow:
        kwargs = dict(
            storage=self.storage,
            settings=self.settings,
            background=self.background,
            voice=self.voice,
            animator=self.animator,
            composer=self.composer,
            email=self.email,
        )
        kwargs.update(overrides)
        return OrderWorkflow(self.repository, self.ledger, **kwargs)


@pytest.fixture
def harness(settings) -> WorkflowHarness:
    return WorkflowHarness(settings)
