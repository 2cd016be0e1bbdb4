"""
SDK for usage-governor.

Provides a governed provider client composing the limiters and the usage log.
"""

from .openai_client import AdmissionDenied, GovernedOpenAI

__all__ = ["AdmissionDenied", "GovernedOpenAI"]
