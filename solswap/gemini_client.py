from __future__ import annotations

import logging
from typing import Optional

import google.generativeai as genai
from google.generativeai.types import HarmBlockThreshold, HarmCategory

from .config import Settings
from .errors import UpstreamUnavailable
from .prompt_loader import PromptTemplate

logger = logging.getLogger("solswap.gemini")

DEFAULT_SAFETY_SETTINGS = [
    {
        "category": HarmCategory.HARM_CATEGORY_HARASSMENT,
        "threshold": HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    },
    {
        "category": HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        "threshold": HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    },
    {
        "category": HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        "threshold": HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    },
    {
        "category": HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
        "threshold": HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    },
]


class GeminiClient:
    """Thin wrapper around the Gemini SDK that phrases conversational replies."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK and load the system prompt.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK global API key when one is set.
        Dependencies: Uses google.generativeai, Settings and prompts/system_prompt.txt.
        Failure Modes: A missing API key leaves the client unavailable; every call then
            raises UpstreamUnavailable so the caller falls back to canned phrasing.
        If Removed: Replies lose their conversational phrasing.
        Testing Notes: Construct without a key and verify generate_reply raises.
        """
        # Configure API key and resolve the model once.
        self._settings = settings
        self._timeout = settings.gemini_timeout_sec
        self._template = PromptTemplate.from_file(settings.prompts_dir / "system_prompt.txt")
        self._model: Optional[genai.GenerativeModel] = None
        if settings.gemini_api_key:
            genai.configure(api_key=settings.gemini_api_key)
            self._model = genai.GenerativeModel(_normalize_model_name(settings.gemini_model))
        else:
            logger.warning("GEMINI_API_KEY not set; replies will use fallback phrasing")

    @property
    def available(self) -> bool:
        return self._model is not None

    def generate_reply(self, message: str, context_summary: str) -> str:
        """Purpose: Phrase a reply to the user's message given a state summary.
        Inputs/Outputs: Inputs are the sanitized message and context summary; returns text.
        Side Effects / State: One network call to Gemini.
        Dependencies: Uses genai.GenerativeModel.generate_content with a request timeout.
        Failure Modes: Raises UpstreamUnavailable on a missing key, SDK/network error,
            timeout, blocked candidate or empty text.
        If Removed: The conversation engine can only send template text.
        Testing Notes: Stub the model to raise and confirm UpstreamUnavailable.
        """
        # Render the prompt and translate every SDK failure into UpstreamUnavailable.
        if self._model is None:
            raise UpstreamUnavailable("Language model is not configured")
        prompt = self._template.render(context=context_summary, message=message)
        try:
            response = self._model.generate_content(
                prompt,
                generation_config={"temperature": 0.4, "max_output_tokens": 512},
                safety_settings=DEFAULT_SAFETY_SETTINGS,
                request_options={"timeout": self._timeout},
            )
            text: Optional[str] = getattr(response, "text", None)
        except Exception as exc:
            logger.warning("gemini call failed: %s", exc.__class__.__name__)
            raise UpstreamUnavailable("Language model unavailable") from exc
        text = (text or "").strip()
        if not text:
            raise UpstreamUnavailable("Language model returned no text")
        return text


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip a leading ``models/`` prefix and surrounding whitespace."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
