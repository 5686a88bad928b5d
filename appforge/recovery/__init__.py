"""Build-error classification and auto-fix advice."""

from appforge.recovery.advisor import FixAdvisor
from appforge.recovery.classifier import ErrorClassifier

__all__ = [
    "ErrorClassifier",
    "FixAdvisor",
]
