# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


class WorkflowError(Exception):
    """Base class for every error raised by bettermake."""


# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------

@dataclass
class ConfigParseError(WorkflowError):
    source: str
    message: str

    def __str__(self) -> str:
        return f"ConfigParseError: {self.source}: {self.message}"


@dataclass
class MissingKey(WorkflowError, KeyError):
    key: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"MissingKey: config has no key '{self.key}'. Known keys: {self.known}"


@dataclass
class ConfigTypeError(WorkflowError):
    key: str
    expected: str
    value: object

    def __str__(self) -> str:
        return f"ConfigTypeError: '{self.key}' should be {self.expected}, got {self.value!r}"


# ----------------------------------------------------------------------
# Rule definitions and graph resolution (fatal, raised before execution)
# ----------------------------------------------------------------------

@dataclass
class DuplicateRuleName(WorkflowError):
    name: str

    def __str__(self) -> str:
        return f"DuplicateRuleName: a rule named '{self.name}' is already registered"


@dataclass
class WildcardError(WorkflowError):
    rule: Optional[str]
    message: str

    def __str__(self) -> str:
        where = f"rule={self.rule}: " if self.rule else ""
        return f"WildcardError: {where}{self.message}"


@dataclass
class AmbiguousProducer(WorkflowError):
    path: str
    rules: List[str]

    def __str__(self) -> str:
        return (
            f"AmbiguousProducer: '{self.path}' can be produced by rules {self.rules}. "
            f"Declare a ruleorder or make the output patterns more specific."
        )


@dataclass
class NoProducerFound(WorkflowError):
    path: str
    requested_by: Optional[str] = None

    def __str__(self) -> str:
        lines = [f"NoProducerFound: '{self.path}' does not exist and no rule produces it"]
        if self.requested_by:
            lines.append(f"requested by: {self.requested_by}")
        return "\n".join(lines)


@dataclass
class CyclicDependency(WorkflowError):
    cycle: List[str]

    def __str__(self) -> str:
        return "CyclicDependency: " + " -> ".join(self.cycle)


@dataclass
class PeriodicWildcard(CyclicDependency):
    """A rule feeds itself with an ever-growing wildcard value, e.g. ``{x}.gz`` from ``{x}.gz.gz``."""
    rule: str = ""
    wildcard: str = ""

    def __str__(self) -> str:
        return (
            f"PeriodicWildcard: rule {self.rule} recurses on wildcard '{self.wildcard}': "
            + " -> ".join(self.cycle)
        )


@dataclass
class InputFunctionError(WorkflowError):
    rule: str
    wildcards: Dict[str, str]
    message: str

    def __str__(self) -> str:
        return f"InputFunctionError: rule={self.rule} wildcards={self.wildcards}: {self.message}"


# ----------------------------------------------------------------------
# Execution (collected into the RunReport)
# ----------------------------------------------------------------------

@dataclass
class ActionExecutionFailure(WorkflowError):
    rule: str
    instance: str
    message: str
    exit_code: Optional[int] = None
    command: Optional[str] = None
    stderr: str = ""

    def __str__(self) -> str:
        lines = [f"[{self.instance}] {self.message}"]
        if self.exit_code is not None:
            lines.append(f"exit={self.exit_code}")
        if self.command:
            lines.append(f"command={self.command}")
        return "\n".join(lines)


@dataclass
class CheckpointResolutionFailure(ActionExecutionFailure):
    pass


@dataclass
class IncompleteCheckpoint(WorkflowError):
    """Raised by ``checkpoints.get`` while the checkpoint has not finished yet."""
    rule: str
    wildcards: Dict[str, str]

    def __str__(self) -> str:
        return f"checkpoint '{self.rule}' {self.wildcards} has not been executed yet"
