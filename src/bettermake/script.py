# script.py
"""
Helpers for scripts started by a ``script(...)`` action.

    from bettermake.script import current_job

    job = current_job()
    with open(job.input[0]) as src, open(job.output[0], "w") as dst:
        ...
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .actions import JOB_ENV_VAR
from .model import Namedlist, Wildcards


@dataclass
class ScriptJob:
    rule: str
    input: Namedlist
    output: Namedlist
    params: Namedlist
    wildcards: Wildcards
    threads: int
    resources: Namedlist
    log: Namedlist
    config: Dict[str, Any]


def _named(values: list, names: Mapping[str, Any]) -> Namedlist:
    return Namedlist(values, names)


def current_job(environ: Optional[Mapping[str, str]] = None) -> ScriptJob:
    """Read the job description the executor passes in the environment."""
    env = os.environ if environ is None else environ
    raw = env.get(JOB_ENV_VAR)
    if not raw:
        raise RuntimeError(f"{JOB_ENV_VAR} is not set; is this script running under bettermake?")

    data = json.loads(raw)
    params = data.get("params", {})
    resources = data.get("resources", {})
    return ScriptJob(
        rule=data["rule"],
        input=_named(data.get("input", []), data.get("input_names", {})),
        output=_named(data.get("output", []), data.get("output_names", {})),
        params=_named(list(params.values()), params),
        wildcards=Wildcards(data.get("wildcards", {})),
        threads=int(data.get("threads", 1)),
        resources=_named(list(resources.values()), resources),
        log=Namedlist(data.get("log", [])),
        config=data.get("config", {}),
    )
