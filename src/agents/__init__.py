"""LLM-backed agent steps: generate, reflect, curate."""

from src.agents.base import AgentStep, ItemFailure, LLMStep, StepOutcome
from src.agents.client import GeminiClient, GeminiConfig, MockGeminiClient
from src.agents.steps import (
    Classification,
    CuratedBullet,
    CurateInput,
    CuratorStep,
    GenerateInput,
    GeneratorStep,
    ReflectInput,
    ReflectionInsight,
    ReflectorStep,
)

__all__ = [
    "AgentStep",
    "ItemFailure",
    "LLMStep",
    "StepOutcome",
    "GeminiClient",
    "GeminiConfig",
    "MockGeminiClient",
    "Classification",
    "CuratedBullet",
    "CurateInput",
    "CuratorStep",
    "GenerateInput",
    "GeneratorStep",
    "ReflectInput",
    "ReflectionInsight",
    "ReflectorStep",
]
