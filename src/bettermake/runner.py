# runner.py
from __future__ import annotations

import contextlib
import inspect
import os
import runpy
import shutil
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .actions import ActionResult, describe, run_action
from .config import Config, ConfigStore
from .dag import Dag, DependencyGraphBuilder
from .errors import ActionExecutionFailure, CheckpointResolutionFailure
from .metadata import DEFAULT_METADATA_DIR, MetadataStore, Provenance
from .model import Directory, FileNode, InstanceState, Rule, RuleInstance, Workflow
from .patterns import PatternExpander
from .reevaluate import CheckpointReevaluator
from .registry import RuleRegistry
from .ui.console import Console, get_console

DEFAULT_WORKFLOW = "bettermake_workflow.py"


class Mode(str, Enum):
    NORMAL = "normal"
    DRY_RUN = "dry-run"
    FORCE = "force"


# ----------------------------------------------------------------------
# Report
# ----------------------------------------------------------------------

@dataclass
class RunEntry:
    key: str
    rule: str
    state: InstanceState
    duration: Optional[float] = None
    output_ref: Optional[str] = None   # log path, or tail of captured output
    reason: Optional[str] = None
    error: Optional[str] = None
    planned: bool = False               # dry-run: would have been executed


@dataclass
class RunReport:
    mode: Mode
    entries: List[RunEntry] = field(default_factory=list)
    started: List[str] = field(default_factory=list)  # keys in the order they were started

    def _with(self, state: InstanceState) -> List[RunEntry]:
        return [e for e in self.entries if e.state == state]

    @property
    def done(self) -> List[RunEntry]:
        return self._with(InstanceState.DONE)

    @property
    def failed(self) -> List[RunEntry]:
        return self._with(InstanceState.FAILED)

    @property
    def skipped(self) -> List[RunEntry]:
        return self._with(InstanceState.SKIPPED)

    @property
    def planned(self) -> List[RunEntry]:
        return [e for e in self.entries if e.planned]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def entry(self, key: str) -> RunEntry:
        for e in self.entries:
            if e.key == key:
                return e
        raise KeyError(key)

    def states(self) -> Dict[str, str]:
        return {e.key: e.state.value for e in self.entries}


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

class Executor:
    """
    Coordinating loop over a DAG.

    Only this loop changes instance states or the DAG; worker threads run
    actions and write their own outputs and metadata records.
    """

    def __init__(
        self,
        dag: Dag,
        builder: DependencyGraphBuilder,
        *,
        config: Optional[Config] = None,
        mode: Mode = Mode.NORMAL,
        cores: Optional[int] = None,
        resources: Optional[Mapping[str, int]] = None,
        fail_fast: bool = False,
        store: Optional[MetadataStore] = None,
        console: Optional[Console] = None,
    ):
        if cores is None:
            c = os.cpu_count() or 2
            cores = max(1, c - 1)
        if cores < 1:
            raise ValueError(f"cores must be >= 1, got {cores}")

        self.dag = dag
        self.builder = builder
        self.reevaluator = CheckpointReevaluator(builder)
        self.config = config if config is not None else Config()
        self.mode = Mode(mode)
        self.cores = cores
        self.resource_limits: Dict[str, int] = dict(resources or {})
        self.fail_fast = fail_fast
        self.store = store or MetadataStore()
        self.console = console or get_console()

        self.states: Dict[str, InstanceState] = {}
        self.reasons: Dict[str, str] = {}
        self.errors: Dict[str, Exception] = {}
        self.durations: Dict[str, float] = {}
        self.output_refs: Dict[str, Optional[str]] = {}
        self.started: List[str] = []
        self._planned: Set[str] = set()
        self._ran: Set[str] = set()      # executed (or, in a dry run, would be)
        self._ok: Set[str] = set()       # finished without failing or being cancelled
        self._failed = False
        self._used_cores = 0
        self._used_resources: Dict[str, int] = {}
        self._in_flight: Dict[Future, Tuple[str, float]] = {}

    # ---- main loop ----
    def run(self) -> RunReport:
        for key in self.dag.instances:
            self.states[key] = InstanceState.PENDING

        with ThreadPoolExecutor(max_workers=self.cores) as pool:
            while True:
                self._promote()

                if not (self.fail_fast and self._failed):
                    for key in self._ready_in_order():
                        if self._fits(key):
                            self._start(pool, key)

                if not self._in_flight:
                    break

                done, _ = wait(list(self._in_flight), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: self._in_flight[f][1]):
                    self._collect(fut)

        for key, state in self.states.items():
            if not state.terminal:
                self._skip(key, "run aborted")

        if self.mode is not Mode.DRY_RUN and not self._ran and not self._failed:
            self.console.print_nothing_to_do()
        return self._report()

    def _promote(self) -> None:
        """Move pending instances forward until nothing changes."""
        changed = True
        while changed:
            changed = False
            for key in self._pending_in_order():
                deps = self.dag.deps.get(key, set())
                # failed, or skipped without having succeeded (cancelled/aborted)
                broken = sorted(
                    d for d in deps
                    if self.states.get(d) == InstanceState.FAILED
                    or (self.states.get(d) == InstanceState.SKIPPED and d not in self._ok)
                )
                if broken:
                    self._skip(key, f"upstream failed: {', '.join(broken)}")
                    changed = True
                    continue
                if not all(d in self._ok for d in deps):
                    continue

                inst = self.dag.instances[key]
                if inst.deferred:
                    # only reachable in a dry run: the checkpoint was planned, not executed
                    waiting = ", ".join(sorted(inst.deferred))
                    self._plan(key, f"waiting for checkpoint {waiting}")
                    changed = True
                    continue

                reason = self._outdated_reason(inst)
                if reason is None:
                    if inst.is_checkpoint and not self._finish_checkpoint(key):
                        changed = True
                        continue
                    self._skip(key, "up to date", ok=True)
                elif self.mode is Mode.DRY_RUN:
                    self.console.print_rule_start(inst, reason, dry_run=True)
                    self._plan(key, reason)
                else:
                    self.states[key] = InstanceState.READY
                    self.reasons[key] = reason
                changed = True

    def _outdated_reason(self, inst: RuleInstance) -> Optional[str]:
        if self.mode is Mode.FORCE:
            return "forced"

        updated = sorted(d for d in self.dag.deps.get(inst.key, ()) if d in self._ran)
        if updated:
            return f"input updated by {', '.join(updated)}"

        if not inst.outputs:
            return "rule has no outputs" if inst.rule.action is not None else None

        nodes = [FileNode.stat(o) for o in inst.outputs]
        missing = [n.path for n in nodes if not n.exists]
        if missing:
            return f"missing output files: {', '.join(missing)}"

        incomplete = self.store.incomplete(inst.outputs)
        if incomplete:
            return f"incomplete output files: {', '.join(incomplete)}"

        oldest_output = min(n.mtime for n in nodes)
        newer = [p for p in inst.inputs if (FileNode.stat(p).mtime or 0) > oldest_output]
        if newer:
            return f"updated input files: {', '.join(newer)}"

        return self.store.changed(inst, Provenance.of(inst, describe(inst, self.config)))

    # ---- scheduling ----
    def _pending_in_order(self) -> List[str]:
        keys = [k for k, s in self.states.items() if s == InstanceState.PENDING]
        return sorted(keys, key=lambda k: self.dag.instances[k].sort_key)

    def _ready_in_order(self) -> List[str]:
        keys = [k for k, s in self.states.items() if s == InstanceState.READY]
        return sorted(keys, key=lambda k: self.dag.instances[k].sort_key)

    def _threads(self, rule: Rule) -> int:
        return min(rule.threads, self.cores)

    def _resource_needs(self, rule: Rule) -> Dict[str, int]:
        return {
            name: min(amount, self.resource_limits[name])
            for name, amount in rule.resources.items()
            if name in self.resource_limits
        }

    def _fits(self, key: str) -> bool:
        rule = self.dag.instances[key].rule
        if self._used_cores + self._threads(rule) > self.cores:
            return False
        for name, need in self._resource_needs(rule).items():
            if self._used_resources.get(name, 0) + need > self.resource_limits[name]:
                return False
        return True

    def _reserve(self, rule: Rule, sign: int) -> None:
        self._used_cores += sign * self._threads(rule)
        for name, need in self._resource_needs(rule).items():
            self._used_resources[name] = self._used_resources.get(name, 0) + sign * need

    def _start(self, pool: ThreadPoolExecutor, key: str) -> None:
        inst = self.dag.instances[key]
        self._reserve(inst.rule, +1)
        self.states[key] = InstanceState.RUNNING
        self.started.append(key)
        self.console.print_rule_start(inst, self.reasons.get(key, ""))

        provenance = Provenance.of(inst, describe(inst, self.config))
        fut = pool.submit(self._execute, inst, self._threads(inst.rule), provenance)
        self._in_flight[fut] = (key, time.monotonic())

    def _execute(self, inst: RuleInstance, threads: int, provenance: Provenance) -> ActionResult:
        """Runs on a worker thread."""
        _prepare_outputs(inst)
        if inst.outputs:
            self.store.mark_incomplete(inst)
        try:
            result = run_action(inst, config=self.config, threads=threads)
            missing = [o for o in inst.outputs if not os.path.exists(o)]
            if missing:
                raise ActionExecutionFailure(
                    rule=inst.rule.name,
                    instance=inst.key,
                    message=f"missing output files after action: {', '.join(missing)}",
                    command=result.command,
                )
        except BaseException:
            _remove_outputs(inst)
            self.store.forget(inst.outputs)
            raise
        if inst.outputs:
            self.store.record(inst, provenance)
        return result

    def _collect(self, fut: Future) -> None:
        key, t0 = self._in_flight.pop(fut)
        inst = self.dag.instances[key]
        self._reserve(inst.rule, -1)
        self.durations[key] = time.monotonic() - t0

        try:
            result = fut.result()
        except Exception as e:
            self._fail(key, e)
            return

        self.output_refs[key] = result.output_ref
        self._ran.add(key)
        if inst.is_checkpoint and not self._finish_checkpoint(key):
            return
        self.states[key] = InstanceState.DONE
        self._ok.add(key)
        self.console.print_success(key, self.durations[key])

    # ---- checkpoints ----
    def _finish_checkpoint(self, key: str) -> bool:
        """Apply the graph changes a finished checkpoint unlocks; False if that failed."""
        try:
            mutation = self.reevaluator.on_complete(self.dag, key)
        except CheckpointResolutionFailure as e:
            if self.mode is Mode.DRY_RUN:
                # reported as planned; its consumers stay waiting
                cause = str(e.__cause__ or e.message).splitlines()[0]
                reason = f"checkpoint re-evaluation failed: {cause}"
                self.console.print_job_skipped(key, reason)
                self._plan(key, reason)
                return False
            self._fail(key, e)
            return False
        if mutation:
            new_keys = self.dag.apply(mutation)
            for k in new_keys:
                self.states[k] = InstanceState.PENDING
            self.console.print_checkpoint_update(key, len(new_keys))
        return True

    # ---- state transitions ----
    def _skip(self, key: str, reason: str, ok: bool = False) -> None:
        self.states[key] = InstanceState.SKIPPED
        self.reasons[key] = reason
        if ok:
            self._ok.add(key)
        self.console.print_job_skipped(key, reason)

    def _plan(self, key: str, reason: str) -> None:
        self.states[key] = InstanceState.SKIPPED
        self.reasons[key] = reason
        self._planned.add(key)
        self._ran.add(key)
        self._ok.add(key)

    def _fail(self, key: str, error: Exception) -> None:
        inst = self.dag.instances[key]
        if not isinstance(error, ActionExecutionFailure):
            error = ActionExecutionFailure(
                rule=inst.rule.name,
                instance=key,
                message=f"{type(error).__name__}: {error}",
            )
        self.states[key] = InstanceState.FAILED
        self.errors[key] = error
        self._failed = True
        hint = f"see log {inst.log}" if inst.log else (error.stderr.strip().splitlines() or [None])[-1]
        self.console.print_failure(key, str(error), exit_code=error.exit_code, hint=hint)

    def _report(self) -> RunReport:
        report = RunReport(mode=self.mode, started=list(self.started))
        for key in self.dag.topological_order():
            inst = self.dag.instances[key]
            err = self.errors.get(key)
            report.entries.append(RunEntry(
                key=key,
                rule=inst.rule.name,
                state=self.states[key],
                duration=self.durations.get(key),
                output_ref=self.output_refs.get(key),
                reason=self.reasons.get(key),
                error=str(err) if err else None,
                planned=key in self._planned,
            ))
        return report


def _prepare_outputs(inst: RuleInstance) -> None:
    _remove_outputs(inst)
    for path in list(inst.outputs) + ([inst.log] if inst.log else []):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    if inst.log:
        Path(inst.log).unlink(missing_ok=True)


def _remove_outputs(inst: RuleInstance) -> None:
    for path in inst.outputs:
        p = Path(path)
        if isinstance(path, Directory) and p.is_dir():
            shutil.rmtree(p)
        elif p.is_file() or p.is_symlink():
            p.unlink()
        elif p.is_dir():
            shutil.rmtree(p)


# ----------------------------------------------------------------------
# Workflow loading (local python module)
# ----------------------------------------------------------------------

@dataclass
class WorkflowModule:
    path: Path
    namespace: Dict[str, Any]

    @property
    def configfiles(self) -> List[str]:
        value = self.namespace.get("CONFIGFILE")
        if value is None:
            return []
        if isinstance(value, (str, Path)):
            return [str(value)]
        return [str(v) for v in value]

    def instantiate(self, config: Config) -> Workflow:
        ns = self.namespace
        if "workflow" in ns and callable(ns["workflow"]):
            factory = ns["workflow"]
            takes_config = bool(inspect.signature(factory).parameters)
            result = factory(config) if takes_config else factory()
        elif "RULES" in ns:
            result = ns["RULES"]
        else:
            raise TypeError(
                f"{self.path.name} must define workflow(config) -> Workflow, or RULES = [Rule, ...]."
            )

        if isinstance(result, Workflow):
            return result
        if isinstance(result, list) and all(isinstance(r, Rule) for r in result):
            return Workflow(rules=result)
        raise TypeError(
            "Workflow must return/define a Workflow (see bettermake.wf) or a List[Rule]."
        )


def load_workflow(path: str | Path) -> WorkflowModule:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow(config) -> Workflow | List[Rule]
      - RULES = [Rule, ...]
    and may define CONFIGFILE = "config.yaml" (or a list of files).
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"bettermake_workflow_{wf_path.stem}"
    return WorkflowModule(path=wf_path, namespace=runpy.run_path(str(wf_path), run_name=module_name))


def build_config(
    configfiles: Iterable[str | Path] = (),
    overrides: Union[Mapping[str, Any], Iterable[str], None] = None,
) -> Config:
    store = ConfigStore()
    for f in configfiles:
        store.load(f)
    if overrides:
        store.override(overrides)
    return store.config


def build_registry(workflow: Workflow) -> RuleRegistry:
    registry = RuleRegistry(PatternExpander(workflow.wildcard_constraints))
    registry.register_all(workflow.rules)
    for order in workflow.ruleorder:
        registry.ruleorder(*order)
    return registry


@contextlib.contextmanager
def working_directory(directory: str | Path | None) -> Iterator[None]:
    if directory is None:
        yield
        return
    original_cwd = os.getcwd()
    try:
        os.chdir(directory)
        yield
    finally:
        os.chdir(original_cwd)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def plan(workflow: Workflow, targets: Optional[Sequence[str]] = None) -> Tuple[Dag, DependencyGraphBuilder]:
    """Resolve targets into a DAG without executing anything."""
    builder = DependencyGraphBuilder(build_registry(workflow))
    return builder.resolve(targets), builder


def execute(
    workflow: Workflow,
    targets: Optional[Sequence[str]] = None,
    *,
    config: Optional[Config] = None,
    mode: Mode = Mode.NORMAL,
    cores: Optional[int] = 1,
    resources: Optional[Mapping[str, int]] = None,
    fail_fast: bool = False,
    metadata_dir: str | Path = DEFAULT_METADATA_DIR,
    console: Optional[Console] = None,
    label: str = "<workflow>",
) -> RunReport:
    # Resolution errors (cycles, missing producers, ...) surface here,
    # before anything touches the filesystem.
    dag, builder = plan(workflow, targets)
    console = console or get_console()
    console.print_run_started(
        workflow=label,
        targets=dag.targets,
        instance_count=len(dag),
        cores=cores or 0,
        mode=Mode(mode).value,
    )
    executor = Executor(
        dag,
        builder,
        config=config,
        mode=mode,
        cores=cores,
        resources=resources,
        fail_fast=fail_fast,
        store=MetadataStore(metadata_dir),
        console=console,
    )
    return executor.run()


def run_target(
    target: Union[str, Sequence[str], None] = None,
    mode: Mode = Mode.NORMAL,
    cores: Optional[int] = 1,
    overrides: Union[Mapping[str, Any], Iterable[str], None] = None,
    *,
    workflow: str | Path = DEFAULT_WORKFLOW,
    configfiles: Sequence[str | Path] = (),
    directory: str | Path | None = None,
    resources: Optional[Mapping[str, int]] = None,
    fail_fast: bool = False,
    console: Optional[Console] = None,
) -> RunReport:
    """
    Load a workflow file, build its config and run the requested target(s).

    Config precedence: the module's CONFIGFILE < ``configfiles`` (in order)
    < ``overrides``. Paths are relative to ``directory`` when given.
    """
    wf_path = Path(workflow).expanduser().resolve()
    targets = [target] if isinstance(target, str) else list(target or [])

    with working_directory(directory):
        module = load_workflow(wf_path)
        config = build_config([*module.configfiles, *configfiles], overrides)
        wf = module.instantiate(config)
        return execute(
            wf,
            targets,
            config=config,
            mode=mode,
            cores=cores,
            resources=resources,
            fail_fast=fail_fast,
            console=console,
            label=wf_path.name,
        )
