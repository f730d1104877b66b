from pathlib import Path

import numpy as np
import pytest
from moviepy import AudioClip, ColorClip, VideoFileClip

from luxlife_worker.pipeline.compose import FRAME_HEIGHT, FRAME_WIDTH, MediaComposer, ScratchDir, render_video
from luxlife_worker.pipeline.errors import CompositionError

pytestmark = pytest.mark.unit


class FakeDownloads:
    def __init__(self, fail_on=None):
        self.urls = []
        self.fail_on = fail_on

    async def __call__(self, url: str, destination: Path) -> Path:
        self.urls.append(url)
        if url == self.fail_on:
            raise RuntimeError(f"failed_to_download {url} status=404")
        destination.write_bytes(b"video")
        return destination


class FakeRender:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def __call__(self, animation_path, audio_path, output_path, background_path=None):
        self.calls.append({
            "animation": animation_path,
            "audio": audio_path,
            "output": output_path,
            "background": background_path,
        })
        if self.fail:
            output_path.write_bytes(b"half")
            raise OSError("ffmpeg exited with 1")
        output_path.write_bytes(b"final")
        return output_path


def test_scratch_dir_removed_on_success():
    with ScratchDir() as workdir:
        (workdir / "file.txt").write_text("x")
        assert workdir.is_dir()
    assert not workdir.exists()


def test_scratch_dir_removed_on_error():
    with pytest.raises(ValueError):
        with ScratchDir() as workdir:
            (workdir / "file.txt").write_text("x")
            raise ValueError("boom")
    assert not workdir.exists()


@pytest.mark.asyncio
async def test_compose_with_background(tmp_path):
    downloads, render = FakeDownloads(), FakeRender()
    audio = tmp_path / "voice.mp3"
    audio.write_bytes(b"mp3")

    output = await MediaComposer(downloads, render).compose(
        "https://bg.test/bg.mp4", "https://anim.test/talk.mp4", audio, "order-1", tmp_path
    )

    assert output == tmp_path / "order-1-final.mp4"
    assert output.read_bytes() == b"final"
    assert downloads.urls == ["https://anim.test/talk.mp4", "https://bg.test/bg.mp4"]
    assert render.calls[0]["background"] == tmp_path / "background.mp4"
    assert render.calls[0]["audio"] == audio
    # intermediates are gone, only the deliverable and the voice remain
    assert sorted(p.name for p in tmp_path.iterdir()) == ["order-1-final.mp4", "voice.mp3"]


@pytest.mark.asyncio
async def test_compose_animation_only(tmp_path):
    downloads, render = FakeDownloads(), FakeRender()

    await MediaComposer(downloads, render).compose(
        None, "https://anim.test/talk.mp4", tmp_path / "voice.mp3", "order-1", tmp_path
    )

    assert downloads.urls == ["https://anim.test/talk.mp4"]
    assert render.calls[0]["background"] is None


@pytest.mark.asyncio
async def test_failed_render_leaves_no_output(tmp_path):
    composer = MediaComposer(FakeDownloads(), FakeRender(fail=True))

    with pytest.raises(CompositionError):
        await composer.compose(None, "https://anim.test/talk.mp4", tmp_path / "voice.mp3", "order-1", tmp_path)

    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_failed_download_is_composition_error(tmp_path):
    composer = MediaComposer(FakeDownloads(fail_on="https://bg.test/bg.mp4"), FakeRender())

    with pytest.raises(CompositionError) as exc:
        await composer.compose(
            "https://bg.test/bg.mp4", "https://anim.test/talk.mp4", tmp_path / "voice.mp3", "order-1", tmp_path
        )

    assert "failed_to_download" in str(exc.value)
    assert list(tmp_path.iterdir()) == []


# ── Real renders on tiny inputs ──────────────────────────────────────────────

def write_color_video(path: Path, size, color, duration=2.0) -> Path:
    clip = ColorClip(size=size, color=color, duration=duration)
    clip.write_videofile(str(path), fps=10, codec="libx264", audio=False, logger=None)
    clip.close()
    return path


def write_tone(path: Path, duration=1.0) -> Path:
    def frame(t):
        return np.array([np.sin(440 * 2 * np.pi * t), np.sin(440 * 2 * np.pi * t)]).T * 0.2

    tone = AudioClip(frame, duration=duration, fps=22050)
    tone.write_audiofile(str(path), fps=22050, logger=None)
    tone.close()
    return path


def test_render_overlays_face_on_vertical_background(tmp_path):
    face = write_color_video(tmp_path / "animation.mp4", (64, 96), (200, 0, 0))
    background = write_color_video(tmp_path / "background.mp4", (160, 90), (0, 0, 200))
    voice = write_tone(tmp_path / "voice.wav", duration=1.0)

    output = render_video(face, voice, tmp_path / "final.mp4", background)

    clip = VideoFileClip(str(output))
    try:
        assert tuple(clip.size) == (FRAME_WIDTH, FRAME_HEIGHT)
        assert clip.audio is not None
        # cut to the voice-over, which is shorter than both videos
        assert clip.duration < 1.5
    finally:
        clip.close()
    assert not (tmp_path / "final-audio.m4a").exists()


def test_render_animation_only_keeps_face_frame(tmp_path):
    face = write_color_video(tmp_path / "animation.mp4", (64, 96), (200, 0, 0))
    voice = write_tone(tmp_path / "voice.wav", duration=1.0)

    output = render_video(face, voice, tmp_path / "final.mp4")

    clip = VideoFileClip(str(output))
    try:
        assert tuple(clip.size) == (64, 96)
        assert clip.audio is not None
        assert clip.duration < 1.5
    finally:
        clip.close()
