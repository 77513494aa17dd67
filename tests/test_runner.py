from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from textwrap import dedent

import pytest

from bettermake import directory, rule, run, shell, wf
from bettermake.errors import AmbiguousProducer, CyclicDependency
from bettermake.metadata import MetadataStore
from bettermake.model import InstanceState
from bettermake.runner import Mode, execute, plan, run_target


def _writer(text, calls=None):
    """run() action writing ``text`` to every output."""

    def write(job):
        if calls is not None:
            calls.append(job.rule)
        for out in job.output:
            Path(out).write_text(text, encoding="utf-8")

    return run(write)


def _failing(partial=False):
    def fail(job):
        if partial:
            Path(job.output[0]).write_text("half", encoding="utf-8")
        raise RuntimeError("boom")

    return run(fail)


def _copy(calls=None):
    def copy(job):
        if calls is not None:
            calls.append(job.rule)
        text = "".join(Path(p).read_text(encoding="utf-8") for p in job.input)
        Path(job.output[0]).write_text(text, encoding="utf-8")

    return run(copy)


def _chain(calls=None):
    return wf(
        rule("c", _copy(calls), inputs="b.txt", outputs="c.txt"),
        rule("b", _copy(calls), inputs="a.txt", outputs="b.txt"),
        rule("a", _writer("A", calls), outputs="a.txt"),
    )


def test_chain_runs_in_dependency_order():
    calls = []
    report = execute(_chain(calls), ["c.txt"])

    assert report.ok
    assert report.exit_code == 0
    assert calls == ["a", "b", "c"]
    assert [e.key for e in report.entries] == ["a", "b", "c"]
    assert all(e.state == InstanceState.DONE for e in report.entries)
    assert Path("c.txt").read_text() == "A"


def test_second_run_executes_nothing():
    execute(_chain(), ["c.txt"])
    calls = []
    report = execute(_chain(calls), ["c.txt"])

    assert calls == []
    assert report.started == []
    assert all(e.state == InstanceState.SKIPPED for e in report.entries)
    assert {e.reason for e in report.entries} == {"up to date"}


def test_touching_an_input_reruns_downstream_only():
    execute(_chain(), ["c.txt"])
    newer = time.time() + 5
    os.utime("b.txt", (newer, newer))

    calls = []
    report = execute(_chain(calls), ["c.txt"])
    assert calls == ["c"]
    assert report.entry("c").reason == "updated input files: b.txt"


def test_force_reruns_everything():
    execute(_chain(), ["c.txt"])
    calls = []
    report = execute(_chain(calls), ["c.txt"], mode=Mode.FORCE)
    assert calls == ["a", "b", "c"]
    assert len(report.done) == 3


def test_failure_cancels_dependents_and_keeps_siblings_going():
    workflow = wf(
        rule("all", inputs=["c.txt", "d.txt"]),
        rule("c", _copy(), inputs="b.txt", outputs="c.txt"),
        rule("b", _failing(partial=True), inputs="a.txt", outputs="b.txt"),
        rule("a", _writer("A"), outputs="a.txt"),
        rule("d", _writer("D"), outputs="d.txt"),
    )
    report = execute(workflow)

    assert not report.ok
    assert report.exit_code == 1
    assert [e.key for e in report.failed] == ["b"]
    assert report.entry("a").state == InstanceState.DONE
    assert report.entry("d").state == InstanceState.DONE
    assert report.entry("c").state == InstanceState.SKIPPED
    assert report.entry("c").reason == "upstream failed: b"
    assert report.entry("all").state == InstanceState.SKIPPED
    assert "RuntimeError: boom" in report.entry("b").error
    # partial outputs of the failed instance are removed
    assert not Path("b.txt").exists()
    assert MetadataStore().load("b.txt") is None


def test_fail_fast_stops_starting_new_work():
    workflow = wf(
        rule("all", inputs=["b.txt", "d.txt"]),
        rule("b", _failing(), outputs="b.txt"),
        rule("d", _writer("D"), outputs="d.txt"),
    )
    report = execute(workflow, cores=1, fail_fast=True)

    assert report.entry("b").state == InstanceState.FAILED
    assert report.entry("d").state == InstanceState.SKIPPED
    assert report.entry("d").reason == "run aborted"
    assert not Path("d.txt").exists()


def test_missing_output_after_action_is_a_failure():
    report = execute(wf(rule("lazy", run(lambda job: None), outputs="never.txt")))
    entry = report.entry("lazy")
    assert entry.state == InstanceState.FAILED
    assert "missing output files after action: never.txt" in entry.error


def test_dry_run_plans_without_side_effects(workdir):
    calls = []
    report = execute(_chain(calls), ["c.txt"], mode=Mode.DRY_RUN)

    assert report.ok
    assert calls == []
    assert [e.key for e in report.planned] == ["a", "b", "c"]
    assert all(e.state == InstanceState.SKIPPED for e in report.entries)
    assert report.entry("a").reason == "missing output files: a.txt"
    assert report.entry("b").reason == "input updated by a"
    assert list(workdir.iterdir()) == []


def test_dry_run_after_a_full_run_plans_nothing():
    execute(_chain(), ["c.txt"])
    report = execute(_chain(), ["c.txt"], mode=Mode.DRY_RUN)
    assert report.planned == []


def test_cycle_fails_before_touching_the_filesystem(workdir):
    workflow = wf(
        rule("x", _copy(), inputs="b.txt", outputs="a.txt"),
        rule("y", _copy(), inputs="a.txt", outputs="b.txt"),
    )
    with pytest.raises(CyclicDependency):
        execute(workflow, ["a.txt"])
    assert list(workdir.iterdir()) == []


def test_ambiguity_is_fatal_unless_ordered():
    rules = [
        rule("generic", _writer("generic"), outputs="{name}.txt"),
        rule("special", _writer("special"), outputs="special.txt"),
    ]
    with pytest.raises(AmbiguousProducer):
        execute(wf(*rules), ["special.txt"])

    report = execute(wf(*rules, ruleorder=[("special", "generic")]), ["special.txt"])
    assert report.ok
    assert Path("special.txt").read_text() == "special"


def test_shell_action_with_log_file():
    workflow = wf(
        rule(
            "hello",
            shell("echo hello > {output}; echo 'to the log'; echo 'oops' >&2"),
            outputs="out/{name}.txt",
            log="logs/{name}.log",
        ),
    )
    report = execute(workflow, ["out/world.txt"])
    entry = report.entry("hello[name=world]")

    assert entry.state == InstanceState.DONE
    assert entry.output_ref == "logs/world.log"
    log = Path("logs/world.log").read_text()
    assert "to the log" in log
    assert "oops" in log
    assert Path("out/world.txt").read_text().strip() == "hello"


def test_shell_failure_reports_exit_code():
    report = execute(wf(rule("bad", shell("echo partial > {output}; exit 3"), outputs="bad.txt")))
    entry = report.entry("bad")
    assert entry.state == InstanceState.FAILED
    assert "exit=3" in entry.error
    assert not Path("bad.txt").exists()


def test_changed_command_triggers_rerun():
    execute(wf(rule("greet", shell("echo one > {output}"), outputs="greet.txt")))
    report = execute(wf(rule("greet", shell("echo two > {output}"), outputs="greet.txt")))

    assert report.entry("greet").state == InstanceState.DONE
    assert report.entry("greet").reason == "code changed"
    assert Path("greet.txt").read_text().strip() == "two"


def test_changed_params_trigger_rerun():
    def workflow(n):
        return wf(rule("p", shell("echo {params.n} > {output}"), outputs="p.txt", params={"n": n}))

    execute(workflow(1))
    assert execute(workflow(1)).entry("p").reason == "up to date"
    assert execute(workflow(2)).entry("p").reason == "params changed"


def test_incomplete_marker_triggers_rerun():
    workflow = wf(rule("a", _writer("A"), outputs="a.txt"))
    execute(workflow)

    dag, _ = plan(workflow, ["a.txt"])
    MetadataStore().mark_incomplete(dag.instances["a"])

    report = execute(workflow)
    assert report.entry("a").reason == "incomplete output files: a.txt"
    assert report.entry("a").state == InstanceState.DONE


def test_directory_outputs():
    def make_dir(job):
        out = Path(job.output[0])
        out.mkdir(parents=True)
        (out / "x.txt").write_text("x")

    report = execute(wf(rule("mk", run(make_dir), outputs=directory("results/dir"))))
    assert report.ok
    assert Path("results/dir/x.txt").exists()


def test_threads_are_clamped_and_limit_concurrency():
    active = []
    peak = []
    lock = threading.Lock()

    def busy(job):
        with lock:
            active.append(job.rule)
            peak.append(len(active))
        time.sleep(0.05)
        with lock:
            active.remove(job.rule)
        Path(job.output[0]).write_text(str(job.threads))

    workflow = wf(
        rule("all", inputs=["x.txt", "y.txt"]),
        rule("x", run(busy), outputs="x.txt", threads=8),
        rule("y", run(busy), outputs="y.txt", threads=8),
    )
    report = execute(workflow, cores=2)

    assert report.ok
    assert max(peak) == 1
    assert Path("x.txt").read_text() == "2"


def test_resource_limits_serialize_heavy_rules():
    active = []
    peak = []
    lock = threading.Lock()

    def heavy(job):
        with lock:
            active.append(job.rule)
            peak.append(len(active))
        time.sleep(0.05)
        with lock:
            active.remove(job.rule)
        Path(job.output[0]).write_text("done")

    workflow = wf(
        rule("all", inputs=["m1.txt", "m2.txt", "m3.txt"]),
        rule("m1", run(heavy), outputs="m1.txt", resources={"mem_mb": 600}),
        rule("m2", run(heavy), outputs="m2.txt", resources={"mem_mb": 600}),
        rule("m3", run(heavy), outputs="m3.txt", resources={"mem_mb": 600}),
    )
    report = execute(workflow, cores=4, resources={"mem_mb": 1000})

    assert report.ok
    assert max(peak) == 1
    assert report.started[:3] == ["m1", "m2", "m3"]


def test_run_target_loads_workflow_and_config(write_file):
    write_file("hello_workflow.py", dedent('''
        from pathlib import Path

        from bettermake import rule, run, wf

        CONFIGFILE = "config.yaml"


        def workflow(config):
            def write(job):
                Path(job.output[0]).write_text(str(job.params.greeting))

            return wf(
                rule("hello", run(write), outputs="hello.txt",
                     params={"greeting": config.get("greeting")}),
            )
    '''))
    write_file("config.yaml", "greeting: from-file\n")
    write_file("extra.yaml", "greeting: from-extra\n")

    report = run_target("hello.txt", workflow="hello_workflow.py")
    assert report.ok
    assert Path("hello.txt").read_text() == "from-file"

    report = run_target("hello.txt", workflow="hello_workflow.py", configfiles=["extra.yaml"])
    assert report.entry("hello").reason == "params changed"
    assert Path("hello.txt").read_text() == "from-extra"

    report = run_target(
        "hello.txt",
        workflow="hello_workflow.py",
        configfiles=["extra.yaml"],
        overrides=["greeting=from-cli"],
    )
    assert Path("hello.txt").read_text() == "from-cli"


def test_run_target_in_another_directory(workdir, write_file):
    write_file("wf/make_workflow.py", dedent('''
        from bettermake import rule, shell

        RULES = [rule("make", shell("echo made > {output}"), outputs="made.txt")]
    '''))
    (workdir / "data").mkdir()

    report = run_target(None, workflow="wf/make_workflow.py", directory="data")
    assert report.ok
    assert (workdir / "data" / "made.txt").exists()
    assert Path.cwd().resolve() == workdir.resolve()
