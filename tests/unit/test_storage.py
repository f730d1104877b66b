from unittest.mock import MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError

from luxlife_worker.pipeline import storage
from luxlife_worker.pipeline.storage import R2Storage, order_upload_key, order_video_key

pytestmark = pytest.mark.unit


def client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "x"}}, "HeadObject")


def test_keys():
    assert order_video_key("u1", "o1", "final.mp4") == "videos/u1/o1/final.mp4"
    assert order_upload_key("u1", "o1", "source.jpg") == "uploads/u1/o1/source.jpg"


@pytest.mark.asyncio
async def test_exists(settings):
    s3 = MagicMock()
    r2 = R2Storage(settings, s3_client=s3)

    assert await r2.exists("uploads/u1/o1/source.jpg") is True
    s3.head_object.assert_called_with(Bucket="assets", Key="uploads/u1/o1/source.jpg")

    s3.head_object.side_effect = client_error("404")
    assert await r2.exists("uploads/u1/o1/source.jpg") is False


@pytest.mark.asyncio
async def test_exists_propagates_other_errors(settings):
    s3 = MagicMock()
    s3.head_object.side_effect = client_error("AccessDenied")
    with pytest.raises(ClientError):
        await R2Storage(settings, s3_client=s3).exists("k")


@pytest.mark.asyncio
async def test_upload_returns_token_url(settings, tmp_path):
    s3 = MagicMock()
    local = tmp_path / "final.mp4"
    local.write_bytes(b"mp4")

    url = await R2Storage(settings, s3_client=s3).upload_file(local, "videos/u1/o1/final.mp4", "video/mp4")

    args, kwargs = s3.upload_file.call_args
    assert args[:3] == (str(local), "assets", "videos/u1/o1/final.mp4")
    token = kwargs["ExtraArgs"]["Metadata"]["download-token"]
    assert kwargs["ExtraArgs"]["ContentType"] == "video/mp4"
    assert url == f"https://cdn.test/videos/u1/o1/final.mp4?token={token}"


@pytest.mark.asyncio
async def test_signed_url_lasts_an_hour(settings):
    s3 = MagicMock()
    s3.generate_presigned_url.return_value = "https://signed"

    assert await R2Storage(settings, s3_client=s3).signed_url("k") == "https://signed"
    assert s3.generate_presigned_url.call_args.kwargs["ExpiresIn"] == 3600


@pytest.mark.asyncio
async def test_download_to_file(tmp_path, monkeypatch):
    def handler(request):
        if request.url.path == "/missing.mp4":
            return httpx.Response(404)
        return httpx.Response(200, content=b"video-bytes")

    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(storage.httpx, "AsyncClient", client_factory)

    path = await storage.download_to_file("https://files.test/clip.mp4", tmp_path / "nested" / "clip.mp4")
    assert path.read_bytes() == b"video-bytes"

    with pytest.raises(RuntimeError):
        await storage.download_to_file("https://files.test/missing.mp4", tmp_path / "missing.mp4")
