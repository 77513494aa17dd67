from __future__ import annotations

from pathlib import Path

import pytest

from bettermake import checkpoint, directory, expand, glob_wildcards, rule, run, wf
from bettermake.dag import DependencyGraphBuilder
from bettermake.errors import CheckpointResolutionFailure, IncompleteCheckpoint
from bettermake.model import InstanceState
from bettermake.reevaluate import CheckpointReevaluator
from bettermake.registry import RuleRegistry
from bettermake.runner import Mode, build_registry, execute


def _split(n):
    def split(job):
        out = Path(job.output[0])
        out.mkdir(parents=True)
        for i in range(1, n + 1):
            (out / f"{i}.txt").write_text(str(i))

    return run(split)


def _process(job):
    Path(job.output[0]).write_text(Path(job.input[0]).read_text() + "!")


def _aggregate(job):
    Path(job.output[0]).write_text(",".join(Path(p).read_text() for p in job.input))


def _aggregate_input(wildcards, checkpoints):
    out = checkpoints.get("split").output[0]
    return expand("processed/{i}.txt", i=glob_wildcards(f"{out}/{{i}}.txt").i)


def _workflow(n=3):
    return wf(
        rule("aggregate", run(_aggregate), inputs=_aggregate_input, outputs="agg.txt"),
        checkpoint("split", _split(n), outputs=directory("chunks")),
        rule("process", run(_process), inputs="chunks/{i}.txt", outputs="processed/{i}.txt"),
    )


def test_consumer_is_deferred_until_the_checkpoint_finishes():
    builder = DependencyGraphBuilder(build_registry(_workflow()))
    dag = builder.resolve(["agg.txt"])

    assert set(dag.instances) == {"aggregate", "split"}
    assert dag.instances["aggregate"].deferred == {"split"}
    assert dag.deps["aggregate"] == {"split"}
    assert dag.deferred() == ["aggregate"]


def test_checkpoints_get_raises_until_complete():
    registry = build_registry(_workflow())
    builder = DependencyGraphBuilder(registry)
    with pytest.raises(IncompleteCheckpoint):
        builder.checkpoints.get("split")
    builder.completed.add("split")
    assert builder.checkpoints.get("split").output[0] == "chunks"


def test_reevaluation_adds_the_discovered_instances(write_file):
    builder = DependencyGraphBuilder(build_registry(_workflow()))
    dag = builder.resolve(["agg.txt"])
    for i in (1, 2, 3):
        write_file(f"chunks/{i}.txt", str(i))

    mutation = CheckpointReevaluator(builder).on_complete(dag, "split")
    new_keys = dag.apply(mutation)

    assert sorted(new_keys) == ["process[i=1]", "process[i=2]", "process[i=3]"]
    assert dag.instances["aggregate"].deferred == set()
    assert list(dag.instances["aggregate"].inputs) == [
        "processed/1.txt", "processed/2.txt", "processed/3.txt",
    ]
    assert dag.deps["aggregate"] == {"split", "process[i=1]", "process[i=2]", "process[i=3]"}


def test_run_discovers_exactly_the_checkpoint_outputs():
    report = execute(_workflow(3), ["agg.txt"], cores=2)

    assert report.ok
    process = [e for e in report.entries if e.rule == "process"]
    assert len(process) == 3
    assert all(e.state == InstanceState.DONE for e in process)
    assert report.entry("aggregate").state == InstanceState.DONE
    assert Path("agg.txt").read_text() == "1!,2!,3!"
    assert report.started[0] == "split"
    assert report.started[-1] == "aggregate"


def test_checkpoint_rerun_is_idempotent():
    execute(_workflow(3), ["agg.txt"])
    report = execute(_workflow(3), ["agg.txt"])

    assert report.started == []
    assert len(report.entries) == 5
    assert all(e.reason == "up to date" for e in report.entries)


def test_dry_run_leaves_consumers_waiting(workdir):
    report = execute(_workflow(3), ["agg.txt"], mode=Mode.DRY_RUN)

    assert report.ok
    assert report.entry("split").planned
    assert report.entry("aggregate").planned
    assert report.entry("aggregate").reason == "waiting for checkpoint split"
    assert list(workdir.iterdir()) == []


def test_resolution_failure_fails_the_checkpoint():
    def bad_input(wildcards, checkpoints):
        checkpoints.get("split")
        return "missing/and/unbuildable.txt"

    workflow = wf(
        rule("aggregate", run(_aggregate), inputs=bad_input, outputs="agg.txt"),
        checkpoint("split", _split(1), outputs=directory("chunks")),
    )
    report = execute(workflow, ["agg.txt"])

    split = report.entry("split")
    assert split.state == InstanceState.FAILED
    assert "unbuildable" in split.error
    assert report.entry("aggregate").state == InstanceState.SKIPPED
    assert report.entry("aggregate").reason == "upstream failed: split"


def test_dry_run_reports_resolution_failure_as_planned(write_file):
    write_file("chunks/1.txt", "1")

    def bad_input(wildcards, checkpoints):
        checkpoints.get("split")
        return "missing/unbuildable.txt"

    workflow = wf(
        rule("aggregate", run(_aggregate), inputs=bad_input, outputs="agg.txt"),
        checkpoint("split", _split(1), outputs=directory("chunks")),
    )
    report = execute(workflow, ["agg.txt"], mode=Mode.DRY_RUN)

    assert report.failed == []
    assert report.ok
    split = report.entry("split")
    assert split.state == InstanceState.SKIPPED
    assert split.planned
    assert split.error is None
    assert split.reason.startswith("checkpoint re-evaluation failed: ")
    assert "unbuildable" in split.reason
    assert report.entry("aggregate").reason == "waiting for checkpoint split"


def test_reevaluator_wraps_errors():
    registry = RuleRegistry()
    registry.register_all(
        [
            rule("consumer", inputs=lambda wc, cps: [cps.get("cp"), "nope.txt"][1], outputs="c.txt"),
            checkpoint("cp", outputs="cp.txt"),
        ]
    )
    builder = DependencyGraphBuilder(registry)
    dag = builder.resolve(["c.txt"])
    with pytest.raises(CheckpointResolutionFailure):
        CheckpointReevaluator(builder).on_complete(dag, "cp")
