# shran/errors.py
"""
Error hierarchy for shran.

Features:
- ConfigError family (MissingField / InvalidValue / DuplicateOverride), always naming the field
- ResolutionError family (CycleDetected / UnknownDependency)
- ExecutionError for processes that could not be spawned
- FetchError, GitHubError, SourceRefNotFoundError, ManifestEntryError, TokenNotFoundError

Stage failures are never raised: they are recorded as data in the BuildReport.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class ShranError(Exception):
    """Base class for every error raised by shran."""


# ----------------------------
# Spec loading
# ----------------------------
class ConfigError(ShranError):
    kind = "ConfigError"

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{self.kind}: {field}: {message}")


class MissingFieldError(ConfigError):
    kind = "MissingField"

    def __init__(self, field: str, message: str = "required field is missing"):
        super().__init__(field, message)


class InvalidValueError(ConfigError):
    kind = "InvalidValue"


class DuplicateOverrideError(ConfigError):
    kind = "DuplicateOverride"

    def __init__(self, field: str, message: str = "library override declared more than once"):
        super().__init__(field, message)


# ----------------------------
# Resolution
# ----------------------------
class ResolutionError(ShranError):
    kind = "ResolutionError"


class CycleDetectedError(ResolutionError):
    kind = "CycleDetected"

    def __init__(self, participants: Sequence[str]):
        self.participants: List[str] = list(participants)
        super().__init__(f"dependency cycle detected: {' -> '.join(self.participants)}")


class UnknownDependencyError(ResolutionError):
    kind = "UnknownDependency"

    def __init__(self, name: str, required_by: Optional[str] = None):
        self.name = name
        self.required_by = required_by
        where = f" (required by {required_by})" if required_by else ""
        super().__init__(f"unknown dependency '{name}'{where}")


# ----------------------------
# Execution
# ----------------------------
class ExecutionError(ShranError):
    """The stage command could not be spawned at all."""

    def __init__(self, command: Sequence[str], reason: str):
        self.command = list(command)
        self.reason = reason
        super().__init__(f"failed to spawn {self.command!r}: {reason}")


# ----------------------------
# Sources, artifacts and bookkeeping
# ----------------------------
class FetchError(ShranError):
    pass


class GitHubError(ShranError):
    pass


class SourceRefNotFoundError(GitHubError):
    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"source reference not found: {ref}")


class TokenNotFoundError(GitHubError):
    pass


class ManifestEntryError(ShranError):
    pass
