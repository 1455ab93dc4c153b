"""Baseline playbook: three risk-graded bullets per category.

Baseline bullets belong to no run and are visible to every run's first
epoch onwards.
"""

from src.db.models import HeuristicRecord
from src.labels import risk_from_content

# (bullet_id, section, content)
BASELINE_BULLETS = [
    ("suicide-001", "suicide", "Active plan, method, or imminent intent to end life = CRITICAL risk."),
    ("suicide-002", "suicide", "Expressing wish to die or not be alive without specific plan = HIGH risk."),
    ("suicide-003", "suicide", "Passive suicidal ideation or hopelessness about future = MEDIUM risk."),
    ("nssi-001", "nssi", "Active self-harm behavior (cutting, burning, hitting) = HIGH risk."),
    ("nssi-002", "nssi", "Strong urges to self-harm with coping strategies in place = MEDIUM risk."),
    ("nssi-003", "nssi", "History of self-harm but currently stable = LOW risk."),
    ("child-001", "child_abuse", "Physical, sexual, or severe emotional abuse of a child = CRITICAL risk."),
    ("child-002", "child_abuse", "Neglect or inadequate care of a child = HIGH risk."),
    ("child-003", "child_abuse", "Concerns about child welfare without immediate danger = MEDIUM risk."),
    ("dv-001", "domestic_violence", "Physical assault, strangulation, or weapon use by partner = CRITICAL risk."),
    ("dv-002", "domestic_violence", "Threats, intimidation, or controlling behavior by partner = HIGH risk."),
    ("dv-003", "domestic_violence", "Emotional or verbal abuse in relationship = MEDIUM risk."),
    ("sv-001", "sexual_violence", "Recent or ongoing sexual assault or abuse = CRITICAL risk."),
    ("sv-002", "sexual_violence", "Sexual coercion or harassment = HIGH risk."),
    ("sv-003", "sexual_violence", "Past sexual trauma disclosure without current danger = MEDIUM risk."),
    ("ea-001", "elder_abuse", "Physical abuse or severe neglect of older adult = CRITICAL risk."),
    ("ea-002", "elder_abuse", "Financial exploitation or emotional abuse of elder = HIGH risk."),
    ("ea-003", "elder_abuse", "Concerns about elder care quality = MEDIUM risk."),
    ("hom-001", "homicide", "Specific plan, means, and intent to harm or kill another person = CRITICAL risk."),
    ("hom-002", "homicide", "Threats to harm others or violent fantasies = HIGH risk."),
    ("hom-003", "homicide", "Anger toward others without violent intent = MEDIUM risk."),
    ("psy-001", "psychosis", "Command hallucinations to harm self or others = CRITICAL risk."),
    ("psy-002", "psychosis", "Active hallucinations or delusions affecting safety = HIGH risk."),
    ("psy-003", "psychosis", "Psychotic symptoms managed with treatment = MEDIUM risk."),
    (
        "man-001",
        "manic_episode",
        "Severe mania with dangerous behavior (reckless spending, hypersexuality, aggression) = CRITICAL risk.",
    ),
    ("man-002", "manic_episode", "Elevated mood with impaired judgment and risky behavior = HIGH risk."),
    ("man-003", "manic_episode", "Hypomania with increased energy but maintained functioning = MEDIUM risk."),
    ("ed-001", "eating_disorder", "Severe restriction, purging with medical complications = CRITICAL risk."),
    ("ed-002", "eating_disorder", "Active eating disorder behaviors affecting health = HIGH risk."),
    ("ed-003", "eating_disorder", "Body image concerns or disordered eating thoughts = MEDIUM risk."),
    (
        "sub-001",
        "substance_abuse",
        "Overdose risk, withdrawal complications, or acute intoxication = CRITICAL risk.",
    ),
    ("sub-002", "substance_abuse", "Active substance use affecting safety or functioning = HIGH risk."),
    ("sub-003", "substance_abuse", "Substance use concerns with maintained functioning = MEDIUM risk."),
    (
        "oth-001",
        "other_emergency",
        "Medical emergency or immediate safety threat not captured in other categories = CRITICAL risk.",
    ),
    ("oth-002", "other_emergency", "Urgent situation requiring immediate intervention = HIGH risk."),
    ("oth-003", "other_emergency", "Concerning situation without immediate danger = MEDIUM risk."),
]


def baseline_heuristics() -> list[HeuristicRecord]:
    return [
        HeuristicRecord(
            bullet_id=bullet_id,
            section=section,
            content=content,
            risk_level=risk_from_content(content),
        )
        for bullet_id, section, content in BASELINE_BULLETS
    ]
