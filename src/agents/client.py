"""Gemini client shared by the generator, reflector and curator steps.

One client is shared by every pipeline of a process, including pipelines
running on background threads, so lazy initialization and the usage
counters are guarded by a lock.
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

EMPTY_RESPONSE = "{}"


@dataclass
class GeminiConfig:
    """Settings for the Gemini API.

    Attributes:
        api_key: Defaults to GEMINI_API_KEY, then GOOGLE_API_KEY
        model: Model name; PLAYBOOK_LLM_MODEL overrides the default
        temperature: Used when a step does not pass its own temperature
        max_output_tokens: Response cap per call
        request_timeout_seconds: Per-call timeout passed to the API
        json_mode: Ask the API for an application/json response
    """

    api_key: str | None = None
    model: str = "gemini-2.5-flash"
    temperature: float = 0.7
    max_output_tokens: int = 8192
    request_timeout_seconds: float = 60.0
    json_mode: bool = True

    def __post_init__(self):
        if self.api_key is None:
            self.api_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
        self.model = os.environ.get("PLAYBOOK_LLM_MODEL") or self.model


@dataclass
class UsageTotals:
    """Running token totals across every call made through a client."""

    calls: int = 0
    prompt_tokens: int = 0
    output_tokens: int = 0


class GeminiClient:
    """Text-in, text-out access to Gemini.

    Models are built lazily, one per distinct system instruction, since each
    step always sends the same instruction.

    Usage:
        client = GeminiClient(GeminiConfig())
        text = client.generate(prompt, system_instruction=JSON_SYSTEM_INSTRUCTION)
    """

    def __init__(self, config: GeminiConfig | None = None):
        self.config = config or GeminiConfig()
        self.usage = UsageTotals()
        self._genai = None
        self._models: dict[str | None, Any] = {}
        self._lock = threading.Lock()

    def _model_for(self, system_instruction: str | None) -> Any:
        with self._lock:
            if self._genai is None:
                if not self.config.api_key:
                    raise ValueError(
                        "Gemini API key not provided. Set GEMINI_API_KEY or pass api_key in GeminiConfig."
                    )
                import google.generativeai as genai

                genai.configure(api_key=self.config.api_key)
                self._genai = genai

            model = self._models.get(system_instruction)
            if model is None:
                model = self._genai.GenerativeModel(
                    self.config.model,
                    system_instruction=system_instruction,
                )
                self._models[system_instruction] = model
            return model

    def generate(
        self,
        prompt: str,
        system_instruction: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Send one prompt and return the response text.

        A response without text (for example a blocked candidate) is
        returned as an empty JSON object so the caller's decode applies its
        defaults.
        """
        model = self._model_for(system_instruction)

        generation_config: dict[str, Any] = {
            "temperature": temperature if temperature is not None else self.config.temperature,
            "max_output_tokens": max_tokens or self.config.max_output_tokens,
        }
        if self.config.json_mode:
            generation_config["response_mime_type"] = "application/json"

        response = model.generate_content(
            prompt,
            generation_config=generation_config,
            request_options={"timeout": self.config.request_timeout_seconds},
        )
        self._record_usage(response)

        try:
            text = response.text
        except ValueError as e:
            logger.warning(f"Gemini returned no text: {e}")
            return EMPTY_RESPONSE
        return text or EMPTY_RESPONSE

    def _record_usage(self, response: Any) -> None:
        usage = getattr(response, "usage_metadata", None)
        with self._lock:
            self.usage.calls += 1
            if usage is not None:
                self.usage.prompt_tokens += getattr(usage, "prompt_token_count", 0) or 0
                self.usage.output_tokens += getattr(usage, "candidates_token_count", 0) or 0


def extract_json(text: str) -> str:
    """Strip a surrounding markdown code fence, if any."""
    text = text.strip()
    if not text.startswith("```"):
        return text

    first_newline = text.find("\n")
    closing_fence = text.rfind("```")
    if first_newline == -1 or closing_fence <= first_newline:
        return text
    return text[first_newline + 1 : closing_fence].strip()


class MockGeminiClient:
    """Scripted client for tests.

    Responses are served in order, then ``"{}"`` once exhausted. An
    Exception instance in the script is raised instead of returned. Every
    call is recorded in ``calls``.
    """

    def __init__(self, responses: list[str | Exception] | None = None):
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []
        self.usage = UsageTotals()

    def generate(
        self,
        prompt: str,
        system_instruction: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        self.calls.append({
            "prompt": prompt,
            "system_instruction": system_instruction,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        self.usage.calls += 1

        index = len(self.calls) - 1
        response = self.responses[index] if index < len(self.responses) else EMPTY_RESPONSE
        if isinstance(response, Exception):
            raise response
        return response
