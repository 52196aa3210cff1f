"""sysop.safety — Danger assessment and interactive-program detection."""

from sysop.safety.interactive import InteractiveMatch, detect_interactive
from sysop.safety.policy import (
    CONFIRMATION_PHRASE,
    DangerAssessment,
    SafetyPolicy,
    Verdict,
)

__all__ = [
    "CONFIRMATION_PHRASE",
    "DangerAssessment",
    "InteractiveMatch",
    "SafetyPolicy",
    "Verdict",
    "detect_interactive",
]
