"""Failure taxonomy for the research pipeline.

Only synthesis failures (and the two request-level codes NO_EVIDENCE and
CANCELLED) terminate a request. Everything else is absorbed by the stage that
raised it and degrades the result instead.
"""
from __future__ import annotations

from typing import Any


class ErrorCode:
    CLASSIFICATION_FAILURE = "CLASSIFICATION_FAILURE"
    PROVIDER_FAILURE = "PROVIDER_FAILURE"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PLANNING_FAILURE = "PLANNING_FAILURE"
    SYNTHESIS_FAILURE = "SYNTHESIS_FAILURE"
    VERIFICATION_FAILURE = "VERIFICATION_FAILURE"
    SESSION_PERSISTENCE_FAILURE = "SESSION_PERSISTENCE_FAILURE"
    NO_EVIDENCE = "NO_EVIDENCE"
    CANCELLED = "CANCELLED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ResearchError(Exception):
    code: str = "RESEARCH_ERROR"
    recoverable: bool = True

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class ClassificationFailure(ResearchError):
    code = ErrorCode.CLASSIFICATION_FAILURE


class ProviderFailure(ResearchError):
    code = ErrorCode.PROVIDER_FAILURE


class ProviderTimeout(ResearchError):
    code = ErrorCode.PROVIDER_TIMEOUT


class PlanningFailure(ResearchError):
    code = ErrorCode.PLANNING_FAILURE


class SynthesisFailure(ResearchError):
    code = ErrorCode.SYNTHESIS_FAILURE
    recoverable = False

    def __init__(self, message: str = "", *, partial_text: str = "", tokens_emitted: int = 0):
        super().__init__(message, tokens_emitted=tokens_emitted)
        self.partial_text = partial_text
        self.tokens_emitted = tokens_emitted


class VerificationFailure(ResearchError):
    code = ErrorCode.VERIFICATION_FAILURE


class SessionPersistenceFailure(ResearchError):
    code = ErrorCode.SESSION_PERSISTENCE_FAILURE


class NoEvidence(ResearchError):
    code = ErrorCode.NO_EVIDENCE
    recoverable = False


class PipelineCancelled(ResearchError):
    code = ErrorCode.CANCELLED
    recoverable = False
