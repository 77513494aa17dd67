from __future__ import annotations

import pytest

from bettermake import build, checkpoint, directory, rule, shell, wf
from bettermake.model import Directory


def test_rule_normalises_inputs_and_outputs():
    r = rule(
        "align",
        shell("bwa mem {input.ref} {input.reads} > {output}"),
        inputs={"ref": "ref.fa", "reads": ["r1.fq", "r2.fq"]},
        outputs=["aln/{s}.bam", directory("aln/{s}.tmp")],
    )
    assert r.inputs == (("ref", "ref.fa"), ("reads", ("r1.fq", "r2.fq")))
    assert r.output_templates == ["aln/{s}.bam", "aln/{s}.tmp"]
    assert isinstance(r.outputs[1][1], Directory)


def test_nested_positional_lists_are_flattened():
    r = rule("all", inputs=["a.txt", ["b.txt", ["c.txt"]]])
    assert [v for _, v in r.inputs] == ["a.txt", "b.txt", "c.txt"]


def test_rule_validation():
    with pytest.raises(ValueError):
        rule("not a name")
    with pytest.raises(ValueError):
        rule("zero", threads=0)
    with pytest.raises(TypeError):
        rule("fn_out", outputs=lambda wc: "x")


def test_checkpoint_helper_sets_the_flag():
    assert checkpoint("split", outputs=directory("chunks")).checkpoint


def test_builder_matches_the_functional_form():
    built = (
        build("sort")
        .input("raw/{s}.txt")
        .output("sorted/{s}.txt")
        .params(n=1)
        .shell("sort {input} > {output}")
        .threads(2)
        .log("logs/{s}.log")
        .build()
    )
    direct = rule(
        "sort",
        shell("sort {input} > {output}"),
        inputs="raw/{s}.txt",
        outputs="sorted/{s}.txt",
        params={"n": 1},
        threads=2,
        log="logs/{s}.log",
    )
    assert built == direct


def test_builder_named_entries_follow_positional_ones():
    r = build("b").input("x.txt", ref="ref.fa").output(main="out.txt").build()
    assert r.inputs == ((None, "x.txt"), ("ref", "ref.fa"))
    assert r.outputs == (("main", "out.txt"),)


def test_wf_flattens_rule_lists():
    a, b = rule("a", outputs="a.txt"), rule("b", outputs="b.txt")
    workflow = wf([a, b], ruleorder=[["a", "b"]], wildcard_constraints={"s": "[a-z]+"})
    assert [r.name for r in workflow.rules] == ["a", "b"]
    assert workflow.ruleorder == [("a", "b")]
    assert workflow.wildcard_constraints == {"s": "[a-z]+"}


def test_package_exports_the_checkpoint_helper():
    import bettermake
    from bettermake import dsl

    assert bettermake.checkpoint is dsl.checkpoint
    assert checkpoint("split", outputs="s.txt").name == "split"


def test_rule_mappings_are_read_only():
    r = rule(
        "sort",
        outputs="sorted/{s}.txt",
        params={"n": 1},
        resources={"mem_mb": 100},
        wildcard_constraints={"s": "[a-z]+"},
    )
    with pytest.raises(TypeError):
        r.params["n"] = 2
    with pytest.raises(TypeError):
        r.resources["mem_mb"] = 1
    with pytest.raises(TypeError):
        r.wildcard_constraints["s"] = ".*"
    assert dict(r.params) == {"n": 1}


def test_rules_are_hashable():
    a = rule("a", outputs="a.txt", params={"n": 1})
    assert hash(a) == hash(rule("a", outputs="a.txt", params={"n": 1}))
    assert len({a, rule("b", outputs="b.txt")}) == 2
