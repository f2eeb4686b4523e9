"""Effectiveness classification of completed reinforcement sessions.

score (% correct) → tier → resulting grade:

    >= 85   Total improvement        → None
    60–84   Significant improvement  → Low
    40–59   Slight improvement       → Medium
    <  40   No improvement           → unchanged (keep current grade)

The same pure function backs the ReinforcementSession grading path and the
"share of sessions per tier" reporting split by origin.
"""

from typing import Dict, Iterable, Mapping, Optional

from app.models.enums import Grade, SessionOrigin, Tier

TOTAL_THRESHOLD = 85.0
SIGNIFICANT_THRESHOLD = 60.0
SLIGHT_THRESHOLD = 40.0

TIER_GRADE: Dict[Tier, Optional[Grade]] = {
    Tier.TOTAL: Grade.NONE,
    Tier.SIGNIFICANT: Grade.LOW,
    Tier.SLIGHT: Grade.MEDIUM,
    Tier.NONE: None,
}


def classify(percentage: float) -> Tier:
    if percentage >= TOTAL_THRESHOLD:
        return Tier.TOTAL
    if percentage >= SIGNIFICANT_THRESHOLD:
        return Tier.SIGNIFICANT
    if percentage >= SLIGHT_THRESHOLD:
        return Tier.SLIGHT
    return Tier.NONE


def resulting_grade(percentage: float, current: Grade) -> Grade:
    """Grade a student ends with after scoring `percentage` on a session."""
    grade = TIER_GRADE[classify(percentage)]
    return current if grade is None else grade


def tier_distribution(results: Iterable[Mapping]) -> Dict[str, Dict[str, float]]:
    """Percentage of completed sessions per tier, split by origin.

    Each result needs "origin" and "percentage". Returns
    {"System": {"Total improvement": 50.0, ...}, "Teacher": {...}} with every
    tier present (0.0 when no sessions fell into it).
    """
    counts = {origin.value: {tier.value: 0 for tier in Tier} for origin in SessionOrigin}
    for result in results:
        origin = SessionOrigin(result["origin"]).value
        counts[origin][classify(float(result["percentage"])).value] += 1

    distribution = {}
    for origin, by_tier in counts.items():
        total = sum(by_tier.values())
        distribution[origin] = {
            tier: round(count * 100 / total, 2) if total else 0.0
            for tier, count in by_tier.items()
        }
    return distribution
