"""
Voice Synthesizer — Google Cloud Text-to-Speech (REST, API key auth).
"""

import base64
import logging
from typing import Optional

import httpx

from .errors import EmptyAudioError, ProviderError

logger = logging.getLogger(__name__)

GOOGLE_TTS_URL = "https://texttospeech.googleapis.com/v1/text:synthesize"

VOICE = {"languageCode": "en-US", "ssmlGender": "FEMALE"}
AUDIO_CONFIG = {"audioEncoding": "MP3", "speakingRate": 0.96}


class GoogleVoiceSynthesizer:
    def __init__(
        self,
        api_key: str,
        url: str = GOOGLE_TTS_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.url = url
        self._transport = transport

    async def synthesize(self, text: str) -> bytes:
        """Return MP3 bytes for `text`. The caller decides where they live."""
        payload = {"input": {"text": text}, "voice": VOICE, "audioConfig": AUDIO_CONFIG}

        async with httpx.AsyncClient(timeout=60, transport=self._transport) as client:
            resp = await client.post(self.url, params={"key": self.api_key}, json=payload)

        if not resp.is_success:
            raise ProviderError("Google TTS", resp.status_code, resp.text)

        content = resp.json().get("audioContent")
        if not content:
            raise EmptyAudioError()

        audio = base64.b64decode(content)
        if not audio:
            raise EmptyAudioError()

        logger.info(f"Synthesized voice-over: {len(text)} chars → {len(audio)} bytes")
        return audio
