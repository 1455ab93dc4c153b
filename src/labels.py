"""Label vocabularies shared by ingestion, prompts and the playbook."""

import re

CATEGORIES = (
    "suicide",
    "nssi",
    "child_abuse",
    "domestic_violence",
    "sexual_violence",
    "elder_abuse",
    "homicide",
    "psychosis",
    "manic_episode",
    "eating_disorder",
    "substance_abuse",
    "other_emergency",
)

# Accepted on input and folded onto the canonical category
CATEGORY_ALIASES = {
    "domestic_abuse": "domestic_violence",
}

RISK_LEVELS = ("CRITICAL", "HIGH", "MEDIUM", "LOW")

DEFAULT_CATEGORY = "other_emergency"
DEFAULT_RISK = "MEDIUM"

AGENT_TYPES = ("generator", "reflector", "curator")
RUN_STATUSES = ("pending", "running", "completed", "stopped", "failed")
SPLITS = ("train", "eval")

_TRAILING_RISK = re.compile(r"=\s*(CRITICAL|HIGH|MEDIUM|LOW)\s+risk\b\.?\s*$", re.IGNORECASE)


def normalize_category(value: str) -> str:
    """Lower-case a category and resolve aliases."""
    category = value.strip().lower()
    return CATEGORY_ALIASES.get(category, category)


def normalize_risk(value: str) -> str:
    return value.strip().upper()


def risk_from_content(content: str, default: str = DEFAULT_RISK) -> str:
    """Recover a risk level from a trailing '= LEVEL risk' phrase."""
    match = _TRAILING_RISK.search(content.strip())
    if match is None:
        return default
    return match.group(1).upper()
