"""Prompt templates for the generator, reflector and curator steps."""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.labels import CATEGORIES, RISK_LEVELS

if TYPE_CHECKING:
    from src.agents.steps import ReflectionInsight
    from src.db.models import HeuristicRecord

JSON_SYSTEM_INSTRUCTION = (
    "You are a helpful assistant that responds only with valid JSON. "
    "Do not include any markdown formatting or code blocks, just the raw JSON."
)


def format_playbook_context(heuristics: list[HeuristicRecord]) -> str:
    """Render bullets with their ids, as the generator sees them."""
    return "\n".join(f"[ID: {h.bullet_id}] [{h.section}] {h.content}" for h in heuristics)


def format_playbook_for_curator(heuristics: list[HeuristicRecord]) -> str:
    """Render bullets without ids."""
    return "\n".join(f"[{h.section}] {h.content}" for h in heuristics)


def build_generator_prompt(context: str, text: str) -> str:
    categories = "\n".join(f"- {c}" for c in CATEGORIES)
    risks = "\n".join(f"- {r}" for r in RISK_LEVELS)
    return f"""You are a risk classifier that assigns a category and risk level to user input.

CATEGORIES:
{categories}

RISK LEVELS:
{risks}

Use the following heuristics to guide your classification:
{context or 'No heuristics available yet.'}

Text to classify: "{text}"

Respond with ONLY valid JSON in this exact format:
{{
  "category": "<category>",
  "risk_level": "<risk_level>",
  "heuristics_used": ["<bullet_id_1>", "<bullet_id_2>"]
}}

IMPORTANT: In the "heuristics_used" array, list the IDs of the specific heuristics from the playbook that influenced your decision. Include 1-3 most relevant heuristics."""


def build_reflector_prompt(
    text: str,
    predicted_category: str,
    predicted_risk: str,
    true_category: str,
    true_risk: str,
) -> str:
    return f"""You are a reflective agent analyzing classification errors.

INPUT TEXT: "{text}"

PREDICTED:
- Category: {predicted_category}
- Risk Level: {predicted_risk}

ACTUAL (TRUE):
- Category: {true_category}
- Risk Level: {true_risk}

Analyze this error and provide:
1. What type of error occurred (e.g., "category misclassification", "risk underestimation", "risk overestimation")
2. What the correct approach should be
3. A key insight that could help prevent similar errors
4. Which section of the playbook this affects (use the true category)
5. A short tag for this insight (e.g., "indirect_language", "context_clues")

Respond in this exact JSON format:
{{
  "error_type": "<error type>",
  "correct_approach": "<correct approach>",
  "key_insight": "<key insight>",
  "affected_section": "<section>",
  "tag": "<tag>"
}}"""


def build_curator_prompt(reflection: ReflectionInsight, playbook_context: str) -> str:
    risks = ", ".join(RISK_LEVELS)
    return f"""You are a curator that maintains a playbook of classification heuristics.

CURRENT PLAYBOOK:
{playbook_context or 'Empty playbook'}

NEW REFLECTION:
- Error Type: {reflection.error_type or 'unknown'}
- Correct Approach: {reflection.correct_approach or 'N/A'}
- Key Insight: {reflection.key_insight or 'N/A'}
- Affected Section: {reflection.affected_section or 'other_emergency'}
- Tag: {reflection.tag or 'general'}

Based on this reflection, generate 1-2 NEW heuristic bullets that should be added to the playbook.
Each bullet should be:
- Actionable and specific
- Clear and concise
- Directly applicable to classification
- Tied to exactly one risk level ({risks})

Respond in JSON format:
{{
  "bullets": [
    {{
      "section": "<section name>",
      "content": "<heuristic bullet point ending with '= <RISK_LEVEL> risk.'>",
      "risk_level": "<RISK_LEVEL>"
    }}
  ]
}}"""


USER_INPUT_PLACEHOLDER = "{{USER_INPUT}}"


def render_generator_template(heuristics: list[HeuristicRecord]) -> str:
    """The generator prompt for a playbook, with the input left as a placeholder."""
    return build_generator_prompt(format_playbook_context(heuristics), USER_INPUT_PLACEHOLDER)
