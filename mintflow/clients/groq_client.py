import json

import structlog
from groq import AsyncGroq

from mintflow.config import settings

logger = structlog.get_logger(__name__)

# Groq strict mode requires additionalProperties: false and every property in "required".
SUMMARY_SCHEMA = {
    "type": "object",
    "properties": {
        "summary": {"type": "string"},
        "key_points": {"type": "array", "items": {"type": "string"}},
        "action_items": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["summary", "key_points", "action_items"],
    "additionalProperties": False,
}

SUMMARY_PROMPT = (
    "You summarize recorded meetings. Given a transcript, return a concise "
    "summary (2-3 sentences), the key points discussed and any action items. "
    "Use empty lists when there are none."
)


class GroqClient:
    """Async wrapper around the official Groq SDK.

    Usage::

        groq = GroqClient()
        text = await groq.transcribe(wav_bytes, "capture.wav")
        data = await groq.summarize(text)          # {"summary", "key_points", "action_items"}
    """

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        transcription_model: str | None = None,
    ) -> None:
        self._model = model or settings.default_model
        self._transcription_model = transcription_model or settings.transcription_model
        self._client = AsyncGroq(api_key=api_key or settings.groq_api_key)

    # ------------------------------------------------------------------
    # Transcription
    # ------------------------------------------------------------------
    async def transcribe(self, audio: bytes, filename: str = "capture.wav") -> str:
        """Hosted Whisper transcription. Returns the plain transcript text."""
        resp = await self._client.audio.transcriptions.create(
            file=(filename, audio),
            model=self._transcription_model,
            response_format="verbose_json",
        )
        text = (getattr(resp, "text", "") or "").strip()
        logger.info("transcription_complete", model=self._transcription_model, chars=len(text))
        return text

    # ------------------------------------------------------------------
    # Completions
    # ------------------------------------------------------------------
    async def chat_json(
        self,
        messages: list[dict],
        response_schema: dict,
        *,
        schema_name: str = "response",
        model: str | None = None,
        temperature: float | None = None,
    ) -> dict:
        """Structured-output completion using Groq's strict JSON Schema mode."""
        kwargs: dict = {
            "model": model or self._model,
            "messages": messages,
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": schema_name,
                    "strict": True,
                    "schema": response_schema,
                },
            },
        }
        if temperature is not None:
            kwargs["temperature"] = temperature

        resp = await self._client.chat.completions.create(**kwargs)
        return json.loads(resp.choices[0].message.content)

    async def summarize(self, transcript: str) -> dict:
        return await self.chat_json(
            [
                {"role": "system", "content": SUMMARY_PROMPT},
                {"role": "user", "content": transcript},
            ],
            SUMMARY_SCHEMA,
            schema_name="meeting_summary",
            temperature=0.3,
        )
