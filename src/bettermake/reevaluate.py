# reevaluate.py
from __future__ import annotations

from typing import List

from .dag import Dag, DagMutation, DependencyGraphBuilder
from .errors import CheckpointResolutionFailure, WorkflowError


class CheckpointReevaluator:
    """
    Re-resolves instances that were waiting on a checkpoint.

    A checkpoint's outputs are only known once it has run, so input
    functions that depend on it cannot be evaluated up front. When the
    checkpoint instance finishes, every instance deferred on it is resolved
    again; the resulting DagMutation is handed back to the executor, which
    applies it on its own loop.
    """

    def __init__(self, builder: DependencyGraphBuilder):
        self.builder = builder

    @property
    def completed(self):
        return self.builder.completed

    def waiting_on(self, dag: Dag, key: str) -> List[str]:
        return [k for k in dag.deferred() if key in dag.instances[k].deferred]

    def on_complete(self, dag: Dag, key: str) -> DagMutation:
        """
        Mark checkpoint ``key`` complete and collect the graph changes for
        its deferred consumers. Raises CheckpointResolutionFailure if the
        newly visible inputs cannot be resolved.
        """
        self.completed.add(key)
        inst = dag.instances[key]
        merged = DagMutation()
        try:
            for consumer in self.waiting_on(dag, key):
                mutation = self.builder.expand_deferred(dag, consumer)
                _merge(merged, mutation)
            _dry_apply(dag, merged)
        except WorkflowError as e:
            raise CheckpointResolutionFailure(
                rule=inst.rule.name,
                instance=key,
                message=f"re-evaluating consumers of checkpoint failed: {e}",
            ) from e
        return merged


def _merge(into: DagMutation, other: DagMutation) -> None:
    seen = {i.key for i in into.instances}
    for inst in other.instances:
        if inst.key not in seen:
            into.instances.append(inst)
            seen.add(inst.key)
    into.producers.update(other.producers)
    for edge in other.edges:
        if edge not in into.edges:
            into.edges.append(edge)
    into.files.update(other.files)


def _dry_apply(dag: Dag, mutation: DagMutation) -> None:
    scratch = Dag()
    scratch.instances = dict(dag.instances)
    scratch.producers = dict(dag.producers)
    scratch.deps = {k: set(v) for k, v in dag.deps.items()}
    scratch.apply(mutation)
