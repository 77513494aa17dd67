from .dsl import rule, checkpoint, shell, script, run, wf, RuleBuilder, build
from .patterns import expand, glob_wildcards, PatternExpander
from .model import Rule, RuleInstance, Workflow, Wildcards, directory
from .config import Config, ConfigStore
from .registry import RuleRegistry
from .dag import Dag, DependencyGraphBuilder
from .reevaluate import CheckpointReevaluator
from .runner import Executor, Mode, RunEntry, RunReport, execute, run_target

__all__ = [
    "rule", "checkpoint", "shell", "script", "run", "wf", "RuleBuilder", "build",
    "expand", "glob_wildcards", "PatternExpander",
    "Rule", "RuleInstance", "Workflow", "Wildcards", "directory",
    "Config", "ConfigStore", "RuleRegistry", "Dag", "DependencyGraphBuilder",
    "CheckpointReevaluator", "Executor", "Mode", "RunEntry", "RunReport", "execute", "run_target",
]
