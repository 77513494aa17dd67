# actions.py
from __future__ import annotations

import inspect
import json
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .config import Config
from .errors import ActionExecutionFailure, WorkflowError
from .metadata import hash_file_contents
from .model import Namedlist, RuleInstance, Wildcards

JOB_ENV_VAR = "BETTERMAKE_JOB"

INTERPRETERS = {
    ".py": [sys.executable],
    ".sh": ["bash"],
    ".R": ["Rscript", "--vanilla"],
    ".r": ["Rscript", "--vanilla"],
    ".pl": ["perl"],
}

TOOL_HINTS = {
    "bash": "Install bash or fix PATH.",
    "Rscript": "Install R (includes Rscript) or fix PATH.",
    "perl": "Install perl or fix PATH.",
}

OUTPUT_TAIL = 4000


@dataclass
class JobContext:
    """Everything an action can refer to: ``{input}``, ``{output}``, ``{params.x}``..."""
    rule: str
    input: Namedlist
    output: Namedlist
    params: Namedlist
    wildcards: Wildcards
    threads: int
    resources: Namedlist
    log: Namedlist
    config: Config = field(default_factory=Config)

    @classmethod
    def of(cls, inst: RuleInstance, config: Optional[Config] = None, threads: Optional[int] = None) -> "JobContext":
        resources = dict(inst.rule.resources)
        return cls(
            rule=inst.rule.name,
            input=inst.inputs,
            output=inst.outputs,
            params=inst.params,
            wildcards=inst.wildcards,
            threads=threads if threads is not None else inst.rule.threads,
            resources=Namedlist(resources.values(), resources),
            log=Namedlist([inst.log] if inst.log else []),
            config=config if config is not None else Config(),
        )

    def format(self, template: str) -> str:
        return template.format(
            input=self.input,
            output=self.output,
            params=self.params,
            wildcards=self.wildcards,
            threads=self.threads,
            resources=self.resources,
            log=self.log,
            config=self.config,
            rule=self.rule,
        )

    def to_json(self) -> str:
        return json.dumps({
            "rule": self.rule,
            "input": list(self.input),
            "input_names": self.input.named(),
            "output": list(self.output),
            "output_names": self.output.named(),
            "params": self.params.named(),
            "wildcards": dict(self.wildcards),
            "threads": self.threads,
            "resources": self.resources.named(),
            "log": list(self.log),
            "config": self.config.to_dict(),
        }, default=str)


@dataclass
class ActionResult:
    command: str
    stdout: str = ""
    stderr: str = ""
    output_ref: Optional[str] = None


def describe(inst: RuleInstance, config: Optional[Config] = None) -> str:
    """Stable text identifying what the instance will execute (for provenance)."""
    action = inst.rule.action
    if action is None:
        return ""
    if action.kind == "shell":
        # the unformatted template: params and inputs are fingerprinted separately
        return "shell:" + str(action.run)
    if action.kind == "script":
        try:
            text = JobContext.of(inst, config).format(str(action.run))
        except (KeyError, AttributeError, IndexError, ValueError, WorkflowError):
            # unformattable path; run_action reports the real error
            text = str(action.run)
        path = Path(text)
        digest = hash_file_contents(path) if path.is_file() else "missing"
        return f"script:{path}:{digest}"
    if action.kind == "run":
        fn = action.run
        try:
            source = inspect.getsource(fn)
        except (OSError, TypeError):
            source = getattr(fn, "__qualname__", repr(fn))
        return "run:" + source
    raise ValueError(f"Unknown action kind: {action.kind!r}")


def run_action(
    inst: RuleInstance,
    *,
    config: Optional[Config] = None,
    threads: Optional[int] = None,
    cwd: str | Path | None = None,
) -> ActionResult:
    """
    Execute the instance's action. Raises ActionExecutionFailure on a non-zero
    exit, a missing interpreter or an exception from a ``run`` callable.
    """
    action = inst.rule.action
    if action is None:
        return ActionResult(command="")

    ctx = JobContext.of(inst, config, threads)
    workdir = Path(cwd or ".") / (action.cwd or ".")

    env = os.environ.copy()
    env[JOB_ENV_VAR] = ctx.to_json()

    if action.kind == "shell":
        result = _run_shell(inst, _format_or_fail(inst, ctx, str(action.run)), workdir, env)
    elif action.kind == "script":
        result = _run_script(inst, _format_or_fail(inst, ctx, str(action.run)), workdir, env)
    elif action.kind == "run":
        result = _run_callable(inst, ctx)
    else:
        raise ValueError(f"Unknown action kind: {action.kind!r}")

    if inst.log:
        _write_log(inst.log, result)
        result.output_ref = inst.log
    else:
        result.output_ref = (result.stdout + result.stderr)[-OUTPUT_TAIL:] or None
    return result


def _format_or_fail(inst: RuleInstance, ctx: JobContext, template: str) -> str:
    try:
        return ctx.format(template)
    except (KeyError, AttributeError, IndexError, ValueError) as e:
        raise ActionExecutionFailure(
            rule=inst.rule.name,
            instance=inst.key,
            message=f"cannot format action {template!r}: {type(e).__name__}: {e}",
        ) from e


def _run_shell(inst: RuleInstance, cmd: str, workdir: Path, env: Dict[str, str]) -> ActionResult:
    bash = shutil.which("bash")
    script = f"set -euo pipefail; {cmd}" if bash else cmd
    proc = subprocess.run(
        script,
        shell=True,
        executable=bash,
        cwd=str(workdir),
        env=env,
        text=True,
        capture_output=True,
    )
    result = ActionResult(command=cmd, stdout=proc.stdout, stderr=proc.stderr)
    if proc.returncode != 0:
        _fail(inst, result, f"shell command exited with status {proc.returncode}", proc.returncode)
    return result


def _run_script(inst: RuleInstance, path: str, workdir: Path, env: Dict[str, str]) -> ActionResult:
    interpreter = INTERPRETERS.get(Path(path).suffix, [])
    argv = [*interpreter, path]
    cmd = " ".join(argv)
    try:
        proc = subprocess.run(
            argv,
            cwd=str(workdir),
            env=env,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as e:
        tool = argv[0]
        hint = TOOL_HINTS.get(tool, f"Check that {tool} exists and is executable.")
        raise ActionExecutionFailure(
            rule=inst.rule.name,
            instance=inst.key,
            message=f"cannot start '{tool}': {e.strerror}. {hint}",
            command=cmd,
        ) from e

    result = ActionResult(command=cmd, stdout=proc.stdout, stderr=proc.stderr)
    if proc.returncode != 0:
        _fail(inst, result, f"script exited with status {proc.returncode}", proc.returncode)
    return result


def _run_callable(inst: RuleInstance, ctx: JobContext) -> ActionResult:
    fn = inst.rule.action.run
    name = getattr(fn, "__qualname__", repr(fn))
    try:
        fn(ctx)
    except Exception as e:
        raise ActionExecutionFailure(
            rule=inst.rule.name,
            instance=inst.key,
            message=f"{type(e).__name__}: {e}",
            command=f"run:{name}",
        ) from e
    return ActionResult(command=f"run:{name}")


def _fail(inst: RuleInstance, result: ActionResult, message: str, exit_code: int) -> None:
    if inst.log:
        _write_log(inst.log, result)
    raise ActionExecutionFailure(
        rule=inst.rule.name,
        instance=inst.key,
        message=message,
        exit_code=exit_code,
        command=result.command,
        stderr=result.stderr[-OUTPUT_TAIL:],
    )


def _write_log(path: str, result: ActionResult) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("a", encoding="utf-8") as f:
        f.write(result.stdout)
        f.write(result.stderr)
