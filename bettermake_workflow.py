# bettermake_workflow.py
# Small pipeline used to try bettermake on itself: per-sample files are
# generated, cleaned by a script, combined, and a checkpoint splits the
# combined file into chunks whose count is only known after it runs.
from __future__ import annotations

from bettermake import checkpoint, directory, expand, glob_wildcards, rule, script, shell, wf

CONFIGFILE = "config.yaml"


def workflow(config):
    samples = config.get_list("samples")

    def chunk_counts(wildcards, checkpoints):
        out = checkpoints.get("split", sample=wildcards.sample).output[0]
        found = glob_wildcards(f"{out}/{{chunk}}.txt")
        return expand("results/{sample}/counts/{chunk}.txt", sample=wildcards.sample, chunk=found.chunk)

    return wf(
        rule(
            "all",
            inputs=[
                "results/combined.txt",
                expand("results/{sample}/total.txt", sample=samples),
            ],
        ),
        rule(
            "generate",
            shell("seq 1 {params.lines} | sed 's/^/{wildcards.sample} /' > {output}"),
            outputs="data/{sample}.txt",
            params={"lines": config.get_int("lines", 10)},
        ),
        rule(
            "strip",
            script("scripts/strip_lines.py"),
            inputs="data/{sample}.txt",
            outputs="results/{sample}/clean.txt",
            params={"keep_every": config.get_int("keep_every", 2)},
            log="logs/strip/{sample}.log",
        ),
        rule(
            "combine",
            shell("cat {input} > {output}"),
            inputs=expand("results/{sample}/clean.txt", sample=samples),
            outputs="results/combined.txt",
            message="Combining cleaned samples",
        ),
        checkpoint(
            "split",
            shell("mkdir -p {output} && split -l {params.size} -d --additional-suffix=.txt {input} {output}/"),
            inputs="results/{sample}/clean.txt",
            outputs=directory("results/{sample}/chunks"),
            params={"size": config.get_int("chunk_size", 2)},
        ),
        rule(
            "count",
            shell("wc -l < {input} > {output}"),
            inputs="results/{sample}/chunks/{chunk}.txt",
            outputs="results/{sample}/counts/{chunk}.txt",
        ),
        rule(
            "total",
            shell("cat {input} | paste -sd+ | bc > {output}"),
            inputs=chunk_counts,
            outputs="results/{sample}/total.txt",
        ),
    )
