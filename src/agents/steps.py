"""Generator, reflector and curator steps.

Each step renders a prompt, makes one LLM call, and decodes the JSON reply
into a typed value. Decoding follows the lenient defaults the agents have
always used (missing category falls back to other_emergency, missing tag to
general, and so on) but rejects replies that cannot be interpreted at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator

from src.agents.base import LLMStep
from src.agents.prompts import (
    JSON_SYSTEM_INSTRUCTION,
    build_curator_prompt,
    build_generator_prompt,
    build_reflector_prompt,
    format_playbook_context,
    format_playbook_for_curator,
)
from src.labels import (
    DEFAULT_CATEGORY,
    DEFAULT_RISK,
    RISK_LEVELS,
    normalize_category,
    normalize_risk,
    risk_from_content,
)

if TYPE_CHECKING:
    from src.agents.client import GeminiClient, MockGeminiClient
    from src.db.models import HeuristicRecord

logger = logging.getLogger(__name__)


# =============================================================================
# Typed inputs and outputs
# =============================================================================


@dataclass
class GenerateInput:
    text: str
    heuristics: list[HeuristicRecord] = field(default_factory=list)


@dataclass
class Classification:
    category: str
    risk_level: str
    cited_ids: list[str] = field(default_factory=list)


@dataclass
class ReflectInput:
    text: str
    predicted_category: str
    predicted_risk: str
    true_category: str
    true_risk: str


@dataclass
class ReflectionInsight:
    error_type: str
    correct_approach: str
    key_insight: str
    affected_section: str
    tag: str

    def to_dict(self) -> dict[str, str]:
        return {
            "error_type": self.error_type,
            "correct_approach": self.correct_approach,
            "key_insight": self.key_insight,
            "affected_section": self.affected_section,
            "tag": self.tag,
        }


@dataclass
class CurateInput:
    reflection: ReflectionInsight
    playbook: list[HeuristicRecord] = field(default_factory=list)


@dataclass
class CuratedBullet:
    section: str
    content: str
    risk_level: str


# =============================================================================
# Response schemas
# =============================================================================


class ClassificationResponse(BaseModel):
    """Generator reply."""

    category: str = Field(default=DEFAULT_CATEGORY)
    risk_level: str = Field(default=DEFAULT_RISK)
    heuristics_used: list[str] = Field(default_factory=list)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value: Any) -> str:
        if not value:
            return DEFAULT_CATEGORY
        return normalize_category(str(value))

    @field_validator("risk_level", mode="before")
    @classmethod
    def _risk(cls, value: Any) -> str:
        if not value:
            return DEFAULT_RISK
        risk = normalize_risk(str(value))
        if risk not in RISK_LEVELS:
            raise ValueError(f"Unknown risk level: {value}")
        return risk

    @field_validator("heuristics_used", mode="before")
    @classmethod
    def _citations(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(v) for v in value if v]


class ReflectionResponse(BaseModel):
    """Reflector reply. Empty fields fall back to defaults in ``ReflectorStep``."""

    error_type: str | None = None
    correct_approach: str | None = None
    key_insight: str | None = None
    affected_section: str | None = None
    tag: str | None = None


class BulletResponse(BaseModel):
    section: str | None = None
    content: str | None = None
    risk_level: str | None = None


# =============================================================================
# Steps
# =============================================================================


class GeneratorStep(LLMStep[GenerateInput, Classification]):
    """Classifies one text using the playbook heuristics as context."""

    name = "generator"
    system_instruction = JSON_SYSTEM_INSTRUCTION

    def build_prompt(self, request: GenerateInput) -> str:
        context = format_playbook_context(request.heuristics)
        return build_generator_prompt(context, request.text)

    def decode(self, payload: Any, request: GenerateInput) -> Classification:
        if not isinstance(payload, dict):
            raise TypeError(f"Expected a JSON object, got {type(payload).__name__}")
        parsed = ClassificationResponse.model_validate(payload)
        return Classification(
            category=parsed.category,
            risk_level=parsed.risk_level,
            cited_ids=parsed.heuristics_used,
        )


class ReflectorStep(LLMStep[ReflectInput, ReflectionInsight]):
    """Explains one classification error."""

    name = "reflector"
    system_instruction = JSON_SYSTEM_INSTRUCTION

    def build_prompt(self, request: ReflectInput) -> str:
        return build_reflector_prompt(
            request.text,
            request.predicted_category,
            request.predicted_risk,
            request.true_category,
            request.true_risk,
        )

    def decode(self, payload: Any, request: ReflectInput) -> ReflectionInsight:
        if not isinstance(payload, dict):
            raise TypeError(f"Expected a JSON object, got {type(payload).__name__}")
        parsed = ReflectionResponse.model_validate(payload)
        return ReflectionInsight(
            error_type=parsed.error_type or "unknown_error",
            correct_approach=parsed.correct_approach or "",
            key_insight=parsed.key_insight or "",
            affected_section=parsed.affected_section or request.true_category,
            tag=parsed.tag or "general",
        )


class CuratorStep(LLMStep[CurateInput, list[CuratedBullet]]):
    """Turns one reflection into at most ``max_bullets`` new heuristics."""

    name = "curator"
    system_instruction = JSON_SYSTEM_INSTRUCTION

    def __init__(
        self,
        client: GeminiClient | MockGeminiClient,
        temperature: float | None = None,
        max_bullets: int = 2,
    ):
        super().__init__(client, temperature=temperature)
        self.max_bullets = max_bullets

    def build_prompt(self, request: CurateInput) -> str:
        context = format_playbook_for_curator(request.playbook)
        return build_curator_prompt(request.reflection, context)

    def decode(self, payload: Any, request: CurateInput) -> list[CuratedBullet]:
        if not isinstance(payload, dict):
            raise TypeError(f"Expected a JSON object, got {type(payload).__name__}")

        raw_bullets = payload.get("bullets")
        if not isinstance(raw_bullets, list):
            logger.warning(f"Curator returned no bullets list: {raw_bullets!r}")
            return []

        fallback_section = request.reflection.affected_section or DEFAULT_CATEGORY
        bullets: list[CuratedBullet] = []
        for raw in raw_bullets:
            if not isinstance(raw, dict):
                continue
            parsed = BulletResponse.model_validate(raw)
            content = (parsed.content or "").strip()
            if not content:
                continue
            bullets.append(
                CuratedBullet(
                    section=normalize_category(parsed.section or fallback_section),
                    content=content,
                    risk_level=self._resolve_risk(parsed.risk_level, content),
                )
            )

        if len(bullets) > self.max_bullets:
            logger.info(f"Curator proposed {len(bullets)} bullets, keeping {self.max_bullets}")
            bullets = bullets[: self.max_bullets]
        return bullets

    @staticmethod
    def _resolve_risk(explicit: str | None, content: str) -> str:
        if explicit:
            risk = normalize_risk(explicit)
            if risk in RISK_LEVELS:
                return risk
        return risk_from_content(content)
