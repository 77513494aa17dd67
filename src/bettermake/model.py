# model.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union


class Directory(str):
    """An output path that names a directory rather than a file."""


def directory(path: str) -> Directory:
    return Directory(path)


class Wildcards(Mapping):
    """Immutable wildcard binding: ``wildcards["sample"]`` or ``wildcards.sample``."""

    __slots__ = ("_items",)

    def __init__(self, values: Optional[Mapping[str, str]] = None, **kwargs: str):
        items = dict(values or {})
        items.update(kwargs)
        object.__setattr__(self, "_items", {k: str(v) for k, v in sorted(items.items())})

    def __getitem__(self, key: str) -> str:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getattr__(self, name: str) -> str:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._items[name]
        except KeyError:
            raise AttributeError(f"no wildcard named '{name}'") from None

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Wildcards are immutable")

    def __hash__(self) -> int:
        return hash(tuple(self._items.items()))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return dict(self._items) == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"Wildcards({self._items})"

    def __str__(self) -> str:
        return ",".join(f"{k}={v}" for k, v in self._items.items())

    def restrict(self, names: Iterable[str]) -> "Wildcards":
        wanted = set(names)
        return Wildcards({k: v for k, v in self._items.items() if k in wanted})


class Namedlist(list):
    """
    List of paths (or params) that also exposes named entries as attributes.

    Formats as the space-joined items so ``"cat {input} > {output}"`` works.
    """

    def __init__(self, items: Iterable[Any] = (), names: Optional[Mapping[str, Any]] = None):
        super().__init__(items)
        self._names: Dict[str, Any] = dict(names or {})

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._names[name]
        except KeyError:
            raise AttributeError(f"no entry named '{name}'") from None

    def __str__(self) -> str:
        return " ".join(str(x) for x in self)

    def keys(self) -> List[str]:
        return list(self._names)

    def named(self) -> Dict[str, Any]:
        return dict(self._names)


@dataclass(frozen=True)
class Action:
    """
    What a rule does.

    kind:
      - "shell":  run is a command template
      - "script": run is a script path (interpreter picked by suffix)
      - "run":    run is a Python callable taking a JobContext
    """
    kind: str
    run: Union[str, Callable[..., Any]]
    cwd: str | None = None


InputItem = Union[str, Callable[..., Any]]
ParamValue = Union[Any, Callable[..., Any]]


@dataclass(frozen=True)
class Rule:
    """A named transformation from input templates to output templates."""
    name: str
    inputs: Tuple[Tuple[Optional[str], InputItem], ...] = ()
    outputs: Tuple[Tuple[Optional[str], str], ...] = ()
    params: Mapping[str, ParamValue] = field(default_factory=dict)
    action: Optional[Action] = None
    threads: int = 1
    resources: Mapping[str, int] = field(default_factory=dict)
    log: Optional[str] = None
    message: Optional[str] = None
    checkpoint: bool = False
    wildcard_constraints: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # read-only views
        for name in ("params", "resources", "wildcard_constraints"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    def __hash__(self) -> int:
        return hash((self.name, self.inputs, self.outputs, self.checkpoint))

    @property
    def output_templates(self) -> List[str]:
        return [t for _, t in self.outputs]

    @property
    def has_input_functions(self) -> bool:
        return any(callable(v) for _, v in self.inputs)


class InstanceState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (InstanceState.DONE, InstanceState.FAILED, InstanceState.SKIPPED)


def instance_key(rule_name: str, wildcards: Mapping[str, str]) -> str:
    if not wildcards:
        return rule_name
    inner = ",".join(f"{k}={v}" for k, v in sorted(wildcards.items()))
    return f"{rule_name}[{inner}]"


@dataclass
class RuleInstance:
    """A rule bound to one concrete wildcard assignment."""
    rule: Rule
    wildcards: Wildcards
    inputs: Namedlist
    outputs: Namedlist
    params: Namedlist
    log: Optional[str]
    seq: int
    rule_order: int = 0
    # checkpoint keys whose completion this instance is waiting for
    deferred: Set[str] = field(default_factory=set)

    @property
    def key(self) -> str:
        return instance_key(self.rule.name, self.wildcards)

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.rule_order, self.seq)

    @property
    def is_checkpoint(self) -> bool:
        return self.rule.checkpoint

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class FileNode:
    path: str
    exists: bool
    mtime: Optional[float] = None

    @classmethod
    def stat(cls, path: str) -> "FileNode":
        try:
            st = os.stat(path)
        except OSError:
            return cls(path=path, exists=False)
        return cls(path=path, exists=True, mtime=st.st_mtime)


@dataclass
class Workflow:
    """Rules plus workflow-wide declarations, as returned by ``wf(...)``."""
    rules: List[Rule]
    ruleorder: List[Sequence[str]] = field(default_factory=list)
    wildcard_constraints: Dict[str, str] = field(default_factory=dict)
