"""
Media Composer — builds the final 1080x1920 deliverable with moviepy.

With a background video:
  background  fit inside 1080x1920, padded on black, centred
  animation   720 px wide, centred horizontally, one third of the way down,
              visible for the first 15 seconds
Without one, the animation is the only video source.

Either way the synthesized voice-over is the only audio stream and the
output stops at whichever of video and audio ends first.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Optional

from moviepy import AudioFileClip, CompositeVideoClip, VideoFileClip

from .errors import CompositionError
from .storage import download_to_file

logger = logging.getLogger(__name__)

# ── Output format ────────────────────────────────────────────────────────────

FRAME_WIDTH = 1080
FRAME_HEIGHT = 1920
FACE_WIDTH = 720
FACE_VISIBLE_SECONDS = 15
DEFAULT_FPS = 30

VIDEO_CODEC = "libx264"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"


class ScratchDir:
    """Private temp directory for one order, removed with everything in it on exit."""

    def __init__(self, prefix: str = "luxlife-"):
        self.prefix = prefix
        self.path: Optional[Path] = None

    def __enter__(self) -> Path:
        self.path = Path(tempfile.mkdtemp(prefix=self.prefix))
        return self.path

    def __exit__(self, exc_type, exc, tb):
        if self.path is not None:
            shutil.rmtree(self.path, ignore_errors=True)
            logger.debug(f"Removed scratch dir {self.path}")
            self.path = None
        return False


def render_video(
    animation_path: Path,
    audio_path: Path,
    output_path: Path,
    background_path: Optional[Path] = None,
) -> Path:
    """Blocking moviepy render. Run it in a worker thread."""
    clips = []
    try:
        face = VideoFileClip(str(animation_path))
        clips.append(face)
        audio = AudioFileClip(str(audio_path))
        clips.append(audio)

        if background_path is not None:
            background = VideoFileClip(str(background_path))
            clips.append(background)

            scale = min(FRAME_WIDTH / background.w, FRAME_HEIGHT / background.h)
            background = background.resized(scale).with_position("center")

            face = face.resized(width=FACE_WIDTH)
            face = face.with_position(
                ((FRAME_WIDTH - face.w) / 2, (FRAME_HEIGHT - face.h) / 3)
            ).with_end(min(FACE_VISIBLE_SECONDS, face.duration))

            video = CompositeVideoClip(
                [background, face],
                size=(FRAME_WIDTH, FRAME_HEIGHT),
                bg_color=(0, 0, 0),
            )
        else:
            video = face

        duration = min(video.duration, audio.duration)
        final = video.with_audio(audio).with_duration(duration)
        clips.append(final)

        final.write_videofile(
            str(output_path),
            fps=face.fps or DEFAULT_FPS,
            codec=VIDEO_CODEC,
            audio_codec=AUDIO_CODEC,
            audio_bitrate=AUDIO_BITRATE,
            temp_audiofile=str(output_path.with_name(output_path.stem + "-audio.m4a")),
            ffmpeg_params=["-movflags", "+faststart"],
            logger=None,
        )
        return output_path
    finally:
        for clip in clips:
            try:
                clip.close()
            except Exception as e:
                logger.debug(f"Clip close failed: {e}")


Downloader = Callable[[str, Path], Awaitable[Path]]


class MediaComposer:
    def __init__(
        self,
        download: Downloader = download_to_file,
        render: Callable[..., Path] = render_video,
    ):
        self._download = download
        self._render = render

    async def compose(
        self,
        background_url: Optional[str],
        animation_url: str,
        audio_path: Path,
        order_id: str,
        workdir: Path,
    ) -> Path:
        """
        Download the inputs into `workdir` and render `{order_id}-final.mp4`.

        The file only appears under its final name once the encode has
        finished.  Any download, decode or encode problem becomes a
        CompositionError.
        """
        animation_path = workdir / "animation.mp4"
        background_path = workdir / "background.mp4" if background_url else None
        partial_path = workdir / f"{order_id}-final.partial.mp4"
        output_path = workdir / f"{order_id}-final.mp4"

        try:
            await self._download(animation_url, animation_path)
            if background_url:
                await self._download(background_url, background_path)

            logger.info(
                f"[{order_id}] Composing {'background + animation' if background_url else 'animation only'}"
            )
            await asyncio.to_thread(
                self._render,
                animation_path,
                audio_path,
                partial_path,
                background_path,
            )
            os.replace(partial_path, output_path)
        except CompositionError:
            raise
        except Exception as e:
            raise CompositionError(f"composition failed: {e}") from e
        finally:
            for path in (animation_path, background_path, partial_path):
                if path is not None and path.exists():
                    path.unlink()

        logger.info(f"[{order_id}] Composed {output_path.name}")
        return output_path
