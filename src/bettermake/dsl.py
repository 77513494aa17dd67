# src/bettermake/dsl.py
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .model import Action, Rule, Workflow


# ---------------------------------------------------------------------
# Action helpers
# ---------------------------------------------------------------------

def shell(cmd: str, *, cwd: str | None = None) -> Action:
    """Shell command template, e.g. ``shell("cat {input} > {output}")``."""
    return Action(kind="shell", run=cmd, cwd=cwd)


def script(path: str, *, cwd: str | None = None) -> Action:
    """Script file; the interpreter is picked from the suffix (.py, .sh, .R, .pl)."""
    return Action(kind="script", run=path, cwd=cwd)


def run(fn: Callable[..., Any]) -> Action:
    """Python callable receiving a JobContext."""
    if not callable(fn):
        raise TypeError(f"run() needs a callable, got {type(fn).__name__}")
    return Action(kind="run", run=fn)


# ---------------------------------------------------------------------
# Spec normalisation
# ---------------------------------------------------------------------

Spec = Union[None, str, Callable[..., Any], Sequence[Any], Dict[str, Any]]


def _specs(value: Spec, *, allow_callables: bool) -> Tuple[Tuple[Optional[str], Any], ...]:
    """
    Turn the accepted shapes into ((name | None, item), ...):
      "a.txt"                      -> ((None, "a.txt"),)
      ["a.txt", ["b", "c"]]        -> nested lists are flattened
      {"reads": "r.fq", "ref": fn} -> named entries; list values stay grouped
    """
    if value is None:
        return ()
    if isinstance(value, str) or callable(value):
        value = [value]

    out: List[Tuple[Optional[str], Any]] = []
    if isinstance(value, dict):
        for name, item in value.items():
            if isinstance(item, (list, tuple)):
                item = tuple(_flatten_paths(item))
            out.append((name, _check_item(item, allow_callables)))
        return tuple(out)

    for item in _flatten_paths(value):
        out.append((None, _check_item(item, allow_callables)))
    return tuple(out)


def _flatten_paths(items: Iterable[Any]) -> List[Any]:
    out: List[Any] = []
    for item in items:
        if isinstance(item, (list, tuple)):
            out.extend(_flatten_paths(item))
        else:
            out.append(item)
    return out


def _check_item(item: Any, allow_callables: bool) -> Any:
    if isinstance(item, (str, tuple)):
        return item
    if callable(item):
        if not allow_callables:
            raise TypeError("outputs must be path templates, not functions")
        return item
    raise TypeError(f"expected a path template, got {type(item).__name__}")


# ---------------------------------------------------------------------
# Functional helpers
# ---------------------------------------------------------------------

def rule(
    name: str,
    action: Optional[Action] = None,
    *,
    inputs: Spec = None,
    outputs: Spec = None,
    params: Optional[Dict[str, Any]] = None,
    threads: int = 1,
    resources: Optional[Dict[str, int]] = None,
    log: Optional[str] = None,
    message: Optional[str] = None,
    wildcard_constraints: Optional[Dict[str, str]] = None,
    checkpoint: bool = False,
) -> Rule:
    if not name or not name.replace("_", "").isalnum():
        raise ValueError(f"rule name must be an identifier, got {name!r}")
    if threads < 1:
        raise ValueError(f"rule({name!r}) threads must be >= 1")

    output_specs = _specs(outputs, allow_callables=False)
    for _, o in output_specs:
        if isinstance(o, tuple):
            raise TypeError(f"rule({name!r}) named outputs take a single path each")

    return Rule(
        name=name,
        inputs=_specs(inputs, allow_callables=True),
        outputs=output_specs,
        params=dict(params or {}),
        action=action,
        threads=threads,
        resources=dict(resources or {}),
        log=log,
        message=message,
        checkpoint=checkpoint,
        wildcard_constraints=dict(wildcard_constraints or {}),
    )


def checkpoint(name: str, action: Optional[Action] = None, **kwargs: Any) -> Rule:
    """A rule whose outputs are only known after it runs; see ``checkpoints.get``."""
    kwargs["checkpoint"] = True
    return rule(name, action, **kwargs)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class RuleBuilder:
    def __init__(self, name: str):
        self.name = name
        self._inputs: List[Any] = []
        self._named_inputs: Dict[str, Any] = {}
        self._outputs: List[str] = []
        self._named_outputs: Dict[str, str] = {}
        self._params: Dict[str, Any] = {}
        self._action: Optional[Action] = None
        self._threads = 1
        self._resources: Dict[str, int] = {}
        self._log: Optional[str] = None
        self._message: Optional[str] = None
        self._constraints: Dict[str, str] = {}
        self._checkpoint = False

    def input(self, *paths: Any, **named: Any):
        self._inputs.extend(paths)
        self._named_inputs.update(named)
        return self

    def output(self, *paths: str, **named: str):
        self._outputs.extend(paths)
        self._named_outputs.update(named)
        return self

    def params(self, **values: Any):
        self._params.update(values)
        return self

    def shell(self, cmd: str, cwd: str | None = None):
        self._action = shell(cmd, cwd=cwd)
        return self

    def script(self, path: str, cwd: str | None = None):
        self._action = script(path, cwd=cwd)
        return self

    def run(self, fn: Callable[..., Any]):
        self._action = run(fn)
        return self

    def threads(self, n: int):
        self._threads = n
        return self

    def resources(self, **values: int):
        self._resources.update(values)
        return self

    def log(self, path: str):
        self._log = path
        return self

    def message(self, text: str):
        self._message = text
        return self

    def constrain(self, **patterns: str):
        self._constraints.update(patterns)
        return self

    def as_checkpoint(self, enabled: bool = True):
        self._checkpoint = enabled
        return self

    def build(self) -> Rule:
        r = rule(
            self.name,
            self._action,
            inputs=self._inputs,
            outputs=self._outputs,
            params=self._params,
            threads=self._threads,
            resources=self._resources,
            log=self._log,
            message=self._message,
            wildcard_constraints=self._constraints,
            checkpoint=self._checkpoint,
        )
        named_in = _specs(self._named_inputs, allow_callables=True) if self._named_inputs else ()
        named_out = _specs(self._named_outputs, allow_callables=False) if self._named_outputs else ()
        if not named_in and not named_out:
            return r
        # rebuild with the named entries appended after the positional ones
        return Rule(
            name=r.name,
            inputs=r.inputs + named_in,
            outputs=r.outputs + named_out,
            params=r.params,
            action=r.action,
            threads=r.threads,
            resources=r.resources,
            log=r.log,
            message=r.message,
            checkpoint=r.checkpoint,
            wildcard_constraints=r.wildcard_constraints,
        )


def build(name: str) -> RuleBuilder:
    """Convenience: build('sort').input(...).output(...).shell(...).build()"""
    return RuleBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------

def wf(
    *rules: Union[Rule, Iterable[Rule]],
    ruleorder: Iterable[Sequence[str]] = (),
    wildcard_constraints: Optional[Dict[str, str]] = None,
) -> Workflow:
    """
    Workflow definition helper.

        from bettermake import wf, rule, shell

        def workflow(config):
            return wf(
                rule("all", inputs="results/summary.txt"),
                rule("summarize", shell("..."), inputs=..., outputs=...),
            )

    The first rule is the default target.
    """
    flat: List[Rule] = []
    for r in rules:
        if isinstance(r, Rule):
            flat.append(r)
        else:
            flat.extend(r)
    return Workflow(
        rules=flat,
        ruleorder=[tuple(o) for o in ruleorder],
        wildcard_constraints=dict(wildcard_constraints or {}),
    )
