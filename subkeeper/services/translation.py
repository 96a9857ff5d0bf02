"""
Subtitle translation through an OpenAI-compatible chat completions API.

Subtitle files are sent in chunks of whole cues (blocks separated by blank
lines) so that numbering and timestamps survive the round trip.
"""

from collections.abc import Callable
from typing import Any

import requests

from subkeeper.core.config import AppConfig
from subkeeper.core.constants import TRANSLATION_PROVIDERS
from subkeeper.core.logging import get_logger

logger = get_logger("translation")

CUES_PER_REQUEST = 40


class TranslationError(Exception):
    """Translation provider returned an error or an unusable response."""


def split_cues(content: str) -> list[str]:
    """Split subtitle text into blank-line separated blocks."""
    normalised = content.replace("\r\n", "\n")
    blocks = [block.strip("\n") for block in normalised.split("\n\n")]
    return [block for block in blocks if block.strip()]


class TranslationClient:
    """Minimal chat completions client."""

    def __init__(
        self,
        api_url: str,
        api_key: str | None,
        model: str,
        timeout: int = 300,
        provider: str = "openai",
    ) -> None:
        if provider not in TRANSLATION_PROVIDERS:
            raise TranslationError(
                f"Unsupported translation provider: {provider}. "
                f"Valid options: {TRANSLATION_PROVIDERS}"
            )
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.provider = provider

    @classmethod
    def from_config(
        cls, config: AppConfig, provider: str = "openai"
    ) -> "TranslationClient":
        return cls(
            api_url=config.translation_api_url,
            api_key=config.translation_api_key,
            model=config.translation_model,
            timeout=config.translation_timeout,
            provider=provider,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _system_prompt(self, target_language: str, preserve_formatting: bool) -> str:
        prompt = (
            "Translate the subtitle cues you receive into language code "
            f"'{target_language}'. Keep every cue number and timestamp line "
            "exactly as given and keep cues separated by a blank line. "
            "Reply with the translated cues only."
        )
        if preserve_formatting:
            prompt += " Keep inline formatting tags such as <i> or {\\an8} intact."
        return prompt

    def translate_text(
        self, text: str, target_language: str, preserve_formatting: bool = True
    ) -> str:
        """
        Translate one chunk of subtitle text.

        Raises:
            TranslationError: If the request fails or the reply is malformed.
        """
        if not self.api_key:
            raise TranslationError("TRANSLATION_API_KEY is not configured")

        payload: dict[str, Any] = {
            "model": self.model,
            "temperature": 0.2,
            "messages": [
                {
                    "role": "system",
                    "content": self._system_prompt(
                        target_language, preserve_formatting
                    ),
                },
                {"role": "user", "content": text},
            ],
        }

        try:
            response = requests.post(
                self.api_url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise TranslationError(f"Translation request failed: {e}") from e
        except ValueError as e:
            raise TranslationError("Translation response was not JSON") from e

        try:
            return data["choices"][0]["message"]["content"].strip()
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise TranslationError("Translation response had no content") from e

    def translate_subtitles(
        self,
        content: str,
        target_language: str,
        preserve_formatting: bool = True,
        on_chunk: Callable[[int, int], None] | None = None,
    ) -> str:
        """
        Translate a whole subtitle file.

        Args:
            content: Subtitle file text.
            target_language: Target language code.
            preserve_formatting: Ask the model to keep inline tags.
            on_chunk: Called with (done, total) after each chunk, and may
                raise to abort (used for cancellation checkpoints).

        Returns:
            Translated subtitle text.
        """
        cues = split_cues(content)
        chunks = [
            cues[i : i + CUES_PER_REQUEST]
            for i in range(0, len(cues), CUES_PER_REQUEST)
        ]
        translated: list[str] = []

        for index, chunk in enumerate(chunks, start=1):
            translated.append(
                self.translate_text(
                    "\n\n".join(chunk), target_language, preserve_formatting
                )
            )
            logger.debug("Translated chunk %d/%d", index, len(chunks))
            if on_chunk:
                on_chunk(index, len(chunks))

        return "\n\n".join(translated) + "\n"
