"""Shared contract for the three agent steps.

Every step takes a typed request and returns a ``StepOutcome``: either a
decoded value or an ``ItemFailure`` describing why the item must be skipped.
Steps never raise for per-item problems, so callers can count and log skips
explicitly.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar

from pydantic import ValidationError

from src.agents.client import extract_json

if TYPE_CHECKING:
    from src.agents.client import GeminiClient, MockGeminiClient

logger = logging.getLogger(__name__)

RequestT = TypeVar("RequestT")
ValueT = TypeVar("ValueT")


@dataclass
class ItemFailure:
    """Why a single sample, error or reflection was skipped."""

    step: str
    reason: str
    raw_response: str | None = None


@dataclass
class StepOutcome(Generic[ValueT]):
    """Tagged result of one agent call."""

    value: ValueT | None = None
    failure: ItemFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def succeeded(cls, value: ValueT) -> StepOutcome[ValueT]:
        return cls(value=value)

    @classmethod
    def failed(cls, failure: ItemFailure) -> StepOutcome[ValueT]:
        return cls(failure=failure)


class AgentStep(Protocol[RequestT, ValueT]):
    """Protocol implemented by GeneratorStep, ReflectorStep and CuratorStep."""

    name: str

    def run(self, request: RequestT) -> StepOutcome[ValueT]:
        ...


class LLMStep(ABC, Generic[RequestT, ValueT]):
    """Base class for steps backed by one JSON-mode LLM call.

    Subclasses build the prompt and decode the parsed payload; this class
    owns the call and the decode-with-fallback.
    """

    name: str = "step"
    system_instruction: str | None = None

    def __init__(
        self,
        client: GeminiClient | MockGeminiClient,
        temperature: float | None = None,
    ):
        self.client = client
        self.temperature = temperature

    @abstractmethod
    def build_prompt(self, request: RequestT) -> str:
        """Render the prompt for one request."""

    @abstractmethod
    def decode(self, payload: Any, request: RequestT) -> ValueT:
        """Turn parsed JSON into the step's value.

        May raise ``ValidationError``, ``KeyError``, ``TypeError`` or
        ``ValueError`` for malformed payloads.
        """

    def run(self, request: RequestT) -> StepOutcome[ValueT]:
        prompt = self.build_prompt(request)

        try:
            response_text = self.client.generate(
                prompt,
                system_instruction=self.system_instruction,
                temperature=self.temperature,
            )
        except Exception as e:
            logger.warning(f"{self.name} call failed: {e}")
            return StepOutcome.failed(ItemFailure(self.name, f"LLM call failed: {e}"))

        try:
            payload = json.loads(extract_json(response_text))
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse {self.name} response: {e}")
            return StepOutcome.failed(
                ItemFailure(self.name, f"Invalid JSON: {e}", raw_response=response_text)
            )

        try:
            value = self.decode(payload, request)
        except (ValidationError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unusable {self.name} response: {e}")
            return StepOutcome.failed(
                ItemFailure(self.name, f"Invalid payload: {e}", raw_response=response_text)
            )

        return StepOutcome.succeeded(value)
