import os, httpx, asyncio, logging

from .exceptions import SynthesisFailure
from .settings import ELEVENLABS_MODEL_ID, TTS_TIMEOUT_S

logger = logging.getLogger(__name__)

# BCP-47 tags used by the app -> ISO 639-1 codes the TTS API expects
_LANGUAGE_CODES = {
    "id-ID": "id",
    "th-TH": "th",
    "cmn-CN": "zh",
    "vi-VN": "vi",
    "en-US": "en",
}

def _voice_id() -> str:
    vid = os.getenv("ELEVENLABS_VOICE_ID", "")
    if not vid:
        raise RuntimeError("ELEVENLABS_VOICE_ID is not set; please configure your .env")
    return vid

def _headers():
    api_key = os.getenv("ELEVENLABS_API_KEY", "")
    if not api_key:
        raise RuntimeError("ELEVENLABS_API_KEY is not set; please configure your .env")
    return {
        "xi-api-key": api_key,
        "Content-Type": "application/json"
    }

def provider_language(language_code: str) -> str:
    if language_code in _LANGUAGE_CODES:
        return _LANGUAGE_CODES[language_code]
    return language_code.split("-")[0].lower() or "en"

async def tts_to_bytes(text: str, language_code: str = "en-US", max_retries: int = 3) -> bytes:
    payload = {
        "text": text,
        "model_id": ELEVENLABS_MODEL_ID,
        "language_code": provider_language(language_code),
        "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
    }
    url = f"https://api.elevenlabs.io/v1/text-to-speech/{_voice_id()}?output_format=mp3_22050_32"

    for attempt in range(max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=TTS_TIMEOUT_S) as client:
                r = await client.post(url, headers=_headers(), json=payload)
                r.raise_for_status()
                if not r.content:
                    raise SynthesisFailure("ElevenLabs returned an empty audio body")
                logger.info(f"Synthesized {len(r.content)} bytes of audio ({language_code})")
                return r.content
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429 and attempt < max_retries:
                # Exponential backoff: wait 2^attempt seconds
                wait_time = 2 ** attempt
                logger.warning(f"ElevenLabs rate limited (429). Retrying in {wait_time} seconds... (attempt {attempt + 1}/{max_retries + 1})")
                await asyncio.sleep(wait_time)
                continue
            raise SynthesisFailure(f"ElevenLabs returned {e.response.status_code}: {e.response.text}") from e
        except httpx.HTTPError as e:
            # Network errors and timeouts are not retried
            raise SynthesisFailure(f"ElevenLabs request failed: {e!r}") from e
    raise SynthesisFailure("ElevenLabs synthesis retries exhausted")
