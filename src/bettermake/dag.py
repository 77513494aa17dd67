# dag.py
from __future__ import annotations

import dataclasses
import heapq
import inspect
import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .errors import (
    AmbiguousProducer,
    CyclicDependency,
    IncompleteCheckpoint,
    InputFunctionError,
    NoProducerFound,
    PeriodicWildcard,
    WildcardError,
    WorkflowError,
)
from .model import Directory, FileNode, Namedlist, Rule, RuleInstance, Wildcards, instance_key
from .patterns import normpath, parse
from .registry import RuleRegistry


# ----------------------------------------------------------------------
# DAG + mutation messages
# ----------------------------------------------------------------------

@dataclass
class DagMutation:
    """
    A batch of graph changes produced by resolution.

    The DAG is only ever changed by applying one of these, which keeps
    all structural edits on the coordinating thread.
    """
    instances: List[RuleInstance] = field(default_factory=list)
    producers: Dict[str, str] = field(default_factory=dict)
    edges: List[Tuple[str, str]] = field(default_factory=list)  # (upstream, downstream)
    files: Dict[str, FileNode] = field(default_factory=dict)
    targets: List[str] = field(default_factory=list)

    @property
    def keys(self) -> List[str]:
        return [i.key for i in self.instances]

    def __bool__(self) -> bool:
        return bool(self.instances or self.edges)


class Dag:
    """Rule instances plus "must finish before" edges between them."""

    def __init__(self) -> None:
        self.instances: Dict[str, RuleInstance] = {}
        self.producers: Dict[str, str] = {}           # path -> instance key
        self.deps: Dict[str, Set[str]] = {}           # key -> upstream keys
        self.dependents: Dict[str, Set[str]] = {}     # key -> downstream keys
        self.files: Dict[str, FileNode] = {}
        self.targets: List[str] = []

    def __contains__(self, key: object) -> bool:
        return key in self.instances

    def __len__(self) -> int:
        return len(self.instances)

    def apply(self, mutation: DagMutation) -> List[str]:
        """Apply a mutation; returns keys that are new to the DAG. Rejects cycles."""
        deps = {k: set(v) for k, v in self.deps.items()}
        for inst in mutation.instances:
            deps.setdefault(inst.key, set())
        for up, down in mutation.edges:
            deps.setdefault(down, set()).add(up)
            deps.setdefault(up, set())
        _check_acyclic(deps)

        new_keys = [i.key for i in mutation.instances if i.key not in self.instances]
        for inst in mutation.instances:
            self.instances[inst.key] = inst
        self.producers.update(mutation.producers)
        self.files.update(mutation.files)
        self.deps = deps
        self.dependents = {k: set() for k in deps}
        for down, ups in deps.items():
            for up in ups:
                self.dependents[up].add(down)
        for t in mutation.targets:
            if t not in self.targets:
                self.targets.append(t)
        return new_keys

    def topological_order(self) -> List[str]:
        """Dependency order; ties broken by rule registration order, then creation order."""
        indeg = {k: len(self.deps.get(k, ())) for k in self.instances}
        heap = [(self.instances[k].sort_key, k) for k, d in indeg.items() if d == 0]
        heapq.heapify(heap)
        order: List[str] = []
        while heap:
            _, node = heapq.heappop(heap)
            order.append(node)
            for child in self.dependents.get(node, ()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    heapq.heappush(heap, (self.instances[child].sort_key, child))
        if len(order) != len(self.instances):
            stuck = sorted(k for k, d in indeg.items() if d > 0)
            raise CyclicDependency(cycle=stuck)
        return order

    def downstream(self, key: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.dependents.get(key, ()))
        while stack:
            k = stack.pop()
            if k in seen:
                continue
            seen.add(k)
            stack.extend(self.dependents.get(k, ()))
        return seen

    def deferred(self) -> List[str]:
        return [k for k, i in self.instances.items() if i.deferred]

    def to_dot(self) -> str:
        lines = ["digraph bettermake {", "    rankdir=LR;", "    node [shape=box, style=rounded];"]
        for key in self.topological_order():
            inst = self.instances[key]
            style = ", style=dashed" if inst.is_checkpoint else ""
            lines.append(f'    "{key}" [label="{inst.rule.name}\\n{inst.wildcards}"{style}];')
        for down in sorted(self.deps):
            for up in sorted(self.deps[down]):
                lines.append(f'    "{up}" -> "{down}";')
        lines.append("}")
        return "\n".join(lines)


def _check_acyclic(deps: Dict[str, Set[str]]) -> None:
    # iterative DFS; reports the first cycle found
    WHITE, GREY, BLACK = 0, 1, 2
    color = {k: WHITE for k in deps}
    for root in sorted(deps):
        if color[root] != WHITE:
            continue
        path: List[str] = []
        stack: List[Tuple[str, Iterable[str]]] = [(root, iter(sorted(deps[root])))]
        color[root] = GREY
        path.append(root)
        while stack:
            node, it = stack[-1]
            nxt = next(it, None)
            if nxt is None:
                stack.pop()
                path.pop()
                color[node] = BLACK
                continue
            if color.get(nxt, WHITE) == GREY:
                cycle = path[path.index(nxt):] + [nxt]
                raise CyclicDependency(cycle=list(reversed(cycle)))
            if color.get(nxt, WHITE) == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append((nxt, iter(sorted(deps.get(nxt, ())))))


# ----------------------------------------------------------------------
# Checkpoint access for input functions
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class CheckpointResult:
    rule: str
    wildcards: Wildcards
    output: Namedlist


class Checkpoints:
    """
    Passed to input functions as their second argument.

        def aggregate_input(wildcards, checkpoints):
            out = checkpoints.get("split", sample=wildcards.sample).output[0]
            ...

    ``get`` raises IncompleteCheckpoint until that checkpoint has finished.
    """

    def __init__(self, registry: RuleRegistry, completed: Set[str]):
        self._registry = registry
        self._completed = completed

    def get(self, name: str, **wildcards: str) -> CheckpointResult:
        if name not in self._registry or not self._registry.get(name).checkpoint:
            raise WildcardError(None, f"'{name}' is not a checkpoint rule")
        rule = self._registry.get(name)
        wanted = parse(rule.output_templates[0]).names if rule.output_templates else ()
        missing = [n for n in wanted if n not in wildcards]
        if missing:
            raise WildcardError(name, f"checkpoints.get() is missing wildcards {missing}")
        wc = Wildcards(wildcards).restrict(wanted)
        if instance_key(name, wc) not in self._completed:
            raise IncompleteCheckpoint(rule=name, wildcards=dict(wc))
        return CheckpointResult(rule=name, wildcards=wc, output=_format_named(rule, rule.outputs, wc))


# ----------------------------------------------------------------------
# Resolution
# ----------------------------------------------------------------------

class _Resolution:
    """Scratch space for one resolution pass; becomes a DagMutation."""

    def __init__(self, dag: Dag):
        self.dag = dag
        self.instances: Dict[str, RuleInstance] = {}
        self.producers: Dict[str, str] = {}
        self.edges: List[Tuple[str, str]] = []
        self.files: Dict[str, FileNode] = {}
        self.targets: List[str] = []
        self._new_keys: List[str] = []
        self._new_paths: List[str] = []

    def producer_of(self, path: str) -> Optional[str]:
        return self.producers.get(path) or self.dag.producers.get(path)

    def has_instance(self, key: str) -> bool:
        return key in self.instances or key in self.dag.instances

    def add_instance(self, inst: RuleInstance) -> None:
        key = inst.key
        for path in inst.outputs:
            owner = self.producer_of(path)
            if owner is not None and owner != key:
                raise AmbiguousProducer(path=path, rules=[owner, key])
        if key not in self.instances:
            self._new_keys.append(key)
        self.instances[key] = inst
        for path in inst.outputs:
            if path not in self.producers:
                self._new_paths.append(path)
            self.producers[path] = key
            self.files[path] = FileNode.stat(path)

    def add_edge(self, up: str, down: str) -> None:
        if (up, down) not in self.edges:
            self.edges.append((up, down))

    def stat(self, path: str) -> FileNode:
        node = self.files.get(path) or FileNode.stat(path)
        self.files[path] = node
        return node

    def mark(self) -> Tuple[int, int, int]:
        return len(self._new_keys), len(self._new_paths), len(self.edges)

    def rollback(self, mark: Tuple[int, int, int]) -> None:
        n_keys, n_paths, n_edges = mark
        for key in self._new_keys[n_keys:]:
            self.instances.pop(key, None)
        for path in self._new_paths[n_paths:]:
            self.producers.pop(path, None)
        del self._new_keys[n_keys:]
        del self._new_paths[n_paths:]
        del self.edges[n_edges:]

    def mutation(self) -> DagMutation:
        return DagMutation(
            instances=list(self.instances.values()),
            producers=dict(self.producers),
            edges=list(self.edges),
            files=dict(self.files),
            targets=list(self.targets),
        )


class DependencyGraphBuilder:
    """
    Backward resolution from requested targets to a DAG of rule instances.

    For each requested path the registry is asked for a producer; the
    producer is instantiated and its inputs are resolved the same way,
    until every leaf is a file that already exists.
    """

    def __init__(self, registry: RuleRegistry, completed_checkpoints: Optional[Set[str]] = None):
        self.registry = registry
        self.completed: Set[str] = completed_checkpoints if completed_checkpoints is not None else set()
        self.checkpoints = Checkpoints(registry, self.completed)
        self._seq = itertools.count()

    # ---- public API ----
    def resolve(self, targets: Optional[Sequence[str]] = None) -> Dag:
        dag = Dag()
        dag.apply(self.resolve_into(dag, targets))
        return dag

    def resolve_into(self, dag: Dag, targets: Optional[Sequence[str]] = None) -> DagMutation:
        if not targets:
            first = self.registry.first_rule()
            if first is None:
                raise WorkflowError("workflow defines no rules")
            targets = [first.name]

        session = _Resolution(dag)
        for target in targets:
            self._resolve_target(session, target)
            session.targets.append(target)
        return session.mutation()

    def expand_deferred(self, dag: Dag, key: str) -> DagMutation:
        """Re-resolve the inputs of a deferred instance against the current DAG."""
        inst = dag.instances[key]
        session = _Resolution(dag)
        fresh = dataclasses.replace(inst, inputs=Namedlist(), deferred=set())
        session.add_instance(fresh)
        fresh.inputs, fresh.deferred = self._resolve_inputs(session, fresh, [key])
        return session.mutation()

    # ---- internals ----
    def _resolve_target(self, session: _Resolution, target: str) -> Optional[str]:
        if target in self.registry:
            rule = self.registry.get(target)
            names = [n for t in rule.output_templates for n in parse(t).names]
            if names:
                raise WildcardError(rule.name, f"cannot use a rule with wildcards {names} as a target")
            key = instance_key(rule.name, {})
            if session.has_instance(key):
                return key
            return self._instantiate(session, rule, Wildcards(), [])
        return self._resolve_path(session, target, None, [])

    def _resolve_path(
        self,
        session: _Resolution,
        path: str,
        requester: Optional[str],
        stack: List[str],
    ) -> Optional[str]:
        path = normpath(path)
        node = session.stat(path)

        existing = session.producer_of(path)
        if existing is not None:
            if existing in stack:
                raise CyclicDependency(cycle=stack[stack.index(existing):] + [existing])
            return existing

        producers = self.registry.find_producers(path)
        if not producers:
            if node.exists:
                return None
            raise NoProducerFound(path=path, requested_by=requester)

        rule, wildcards = producers[0]
        key = instance_key(rule.name, wildcards)
        if key in stack:
            raise CyclicDependency(cycle=stack[stack.index(key):] + [key])
        if session.has_instance(key):
            return key

        mark = session.mark()
        try:
            _check_periodic(session, rule, wildcards, stack)
            return self._instantiate(session, rule, wildcards, stack)
        except (NoProducerFound, PeriodicWildcard):
            # an existing file can stand in for a producer whose inputs are gone
            if node.exists:
                session.rollback(mark)
                return None
            raise

    def _instantiate(self, session: _Resolution, rule: Rule, wildcards: Wildcards, stack: List[str]) -> str:
        inst = RuleInstance(
            rule=rule,
            wildcards=wildcards,
            inputs=Namedlist(),
            outputs=_format_named(rule, rule.outputs, wildcards),
            params=self._params(rule, wildcards),
            log=_format(rule, rule.log, wildcards) if rule.log else None,
            seq=next(self._seq),
            rule_order=self.registry.order_of(rule.name),
        )
        session.add_instance(inst)
        inst.inputs, inst.deferred = self._resolve_inputs(session, inst, stack + [inst.key])
        return inst.key

    def _resolve_inputs(
        self,
        session: _Resolution,
        inst: RuleInstance,
        stack: List[str],
    ) -> Tuple[Namedlist, Set[str]]:
        items: List[str] = []
        names: Dict[str, Any] = {}
        deferred: Set[str] = set()

        for name, spec in inst.rule.inputs:
            if callable(spec):
                try:
                    paths = _flatten(self._call_input_function(inst, spec), inst)
                except IncompleteCheckpoint as pending:
                    cp_key = self._resolve_checkpoint(session, pending, stack)
                    deferred.add(cp_key)
                    session.add_edge(cp_key, inst.key)
                    continue
            elif isinstance(spec, tuple):
                paths = [_format(inst.rule, t, inst.wildcards) for t in spec]
            else:
                paths = [_format(inst.rule, spec, inst.wildcards)]

            paths = [normpath(p) for p in paths]
            for p in paths:
                dep = self._resolve_path(session, p, inst.key, stack)
                if dep is not None:
                    session.add_edge(dep, inst.key)
            items.extend(paths)
            if name:
                names[name] = paths[0] if len(paths) == 1 else Namedlist(paths)

        return Namedlist(items, names), deferred

    def _resolve_checkpoint(self, session: _Resolution, pending: IncompleteCheckpoint, stack: List[str]) -> str:
        rule = self.registry.get(pending.rule)
        wc = Wildcards(pending.wildcards)
        key = instance_key(rule.name, wc)
        if key in stack:
            raise CyclicDependency(cycle=stack[stack.index(key):] + [key])
        if session.has_instance(key):
            return key
        return self._instantiate(session, rule, wc, stack)

    def _call_input_function(self, inst: RuleInstance, fn: Callable[..., Any]) -> Any:
        try:
            arity = len(inspect.signature(fn).parameters)
        except (TypeError, ValueError):
            arity = 1
        try:
            if arity >= 2:
                return fn(inst.wildcards, self.checkpoints)
            return fn(inst.wildcards)
        except WorkflowError:
            raise
        except Exception as e:
            raise InputFunctionError(
                rule=inst.rule.name,
                wildcards=dict(inst.wildcards),
                message=f"{type(e).__name__}: {e}",
            ) from e

    def _params(self, rule: Rule, wildcards: Wildcards) -> Namedlist:
        values: Dict[str, Any] = {}
        for name, value in rule.params.items():
            if callable(value):
                try:
                    value = value(wildcards)
                except Exception as e:
                    raise InputFunctionError(
                        rule=rule.name,
                        wildcards=dict(wildcards),
                        message=f"params.{name}: {type(e).__name__}: {e}",
                    ) from e
            values[name] = value
        return Namedlist(values.values(), values)


def _check_periodic(session: _Resolution, rule: Rule, wildcards: Wildcards, stack: List[str]) -> None:
    """Raise PeriodicWildcard if ``rule`` is already on the stack with a value this one grows from."""
    for i, key in enumerate(stack):
        earlier = session.instances.get(key) or session.dag.instances.get(key)
        if earlier is None or earlier.rule.name != rule.name:
            continue
        for name, value in wildcards.items():
            before = earlier.wildcards.get(name)
            if before is not None and before != value and before in value:
                raise PeriodicWildcard(
                    cycle=stack[i:] + [instance_key(rule.name, wildcards)],
                    rule=rule.name,
                    wildcard=name,
                )


def _format(rule: Rule, template: str, wildcards: Wildcards) -> str:
    try:
        return parse(template).format(wildcards)
    except WildcardError as e:
        raise WildcardError(rule.name, e.message) from e


def _format_named(rule: Rule, specs: Sequence[Tuple[Optional[str], str]], wildcards: Wildcards) -> Namedlist:
    items: List[str] = []
    names: Dict[str, str] = {}
    for name, template in specs:
        path = normpath(_format(rule, template, wildcards))
        if isinstance(template, Directory):
            path = Directory(path)
        items.append(path)
        if name:
            names[name] = path
    return Namedlist(items, names)


def _flatten(value: Any, inst: RuleInstance) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        out: List[str] = []
        for v in value:
            out.extend(_flatten(v, inst))
        return out
    raise InputFunctionError(
        rule=inst.rule.name,
        wildcards=dict(inst.wildcards),
        message=f"input function must return a path or a list of paths, got {type(value).__name__}",
    )
