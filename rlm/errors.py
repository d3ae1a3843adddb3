# -*- coding: utf-8 -*-

from typing import List, Optional


class RLMError(Exception):
    """Base class for every error the engine raises to callers."""


class ConfigurationError(RLMError, ValueError):
    """Missing or invalid option, document or registration. Raised before any session starts."""


class CompletionError(RLMError):
    def __init__(self, message: str, collaborator: str = "completion", status: Optional[int] = None):
        super().__init__(f"[{collaborator}] {message}")
        self.collaborator = collaborator
        self.status = status


class SchemaError(RLMError):
    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid value")


class PhaseError(RLMError):
    def __init__(self, phase: str, message: str):
        super().__init__(f"phase {phase} failed: {message}")
        self.phase = phase


class InputRejected(RLMError):
    def __init__(self, matches: List[dict]):
        self.matches = list(matches)
        names = ", ".join(m.get("pattern", "") for m in self.matches)
        super().__init__(f"input rejected ({names})")
