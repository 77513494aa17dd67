# metadata.py
from __future__ import annotations

import hashlib
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

from .model import RuleInstance

# ---------------------------------------------------------------------
# Per-output provenance records
# ---------------------------------------------------------------------
# Every output written by a rule instance gets a small JSON record:
#
#   .bettermake/metadata/<sha256(path)>.json
#   {
#     "path": "results/a.txt",
#     "rule": "combine",
#     "code": <hash of the resolved action>,
#     "params": <hash of the params>,
#     "inputs": <hash of the sorted input path list>,
#     "incomplete": false,
#     "recorded_at_unix": 1700000000
#   }
#
# The executor compares these against the current instance to rerun work
# whose command, params or input set changed since the output was made,
# and writes "incomplete": true before an action starts so an interrupted
# run is detected next time.
# ---------------------------------------------------------------------

DEFAULT_METADATA_DIR = ".bettermake/metadata"


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


@dataclass(frozen=True)
class Provenance:
    code: str
    params: str
    inputs: str

    @classmethod
    def of(cls, inst: RuleInstance, code_text: str) -> "Provenance":
        return cls(
            code=_sha256_str(code_text),
            params=_sha256_str(_json_dumps_stable(inst.params.named())),
            inputs=_sha256_str(_json_dumps_stable(sorted(inst.inputs))),
        )


class MetadataStore:
    """
    File-based provenance store:
      root/
        <sha256(output path)>.json
    The directory is created on first write only.
    """

    def __init__(self, root: str | Path = DEFAULT_METADATA_DIR):
        self.root = Path(root)

    def record_path(self, output: str) -> Path:
        return self.root / f"{_sha256_str(str(output))}.json"

    def load(self, output: str) -> Optional[Dict]:
        p = self.record_path(output)
        if not p.exists():
            return None
        try:
            return json.loads(p.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            # unreadable record: behave as if none was written
            return None

    def _write(self, output: str, payload: Dict) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        p = self.record_path(output)
        tmp = p.with_suffix(f".json.{os.getpid()}.tmp")
        try:
            tmp.write_text(json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp.replace(p)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def mark_incomplete(self, inst: RuleInstance) -> None:
        for output in inst.outputs:
            self._write(output, {
                "path": str(output),
                "rule": inst.rule.name,
                "incomplete": True,
                "recorded_at_unix": int(time.time()),
            })

    def record(self, inst: RuleInstance, provenance: Provenance) -> None:
        for output in inst.outputs:
            self._write(output, {
                "path": str(output),
                "rule": inst.rule.name,
                "code": provenance.code,
                "params": provenance.params,
                "inputs": provenance.inputs,
                "incomplete": False,
                "recorded_at_unix": int(time.time()),
            })

    def forget(self, outputs: Iterable[str]) -> None:
        for output in outputs:
            self.record_path(output).unlink(missing_ok=True)

    def incomplete(self, outputs: Iterable[str]) -> list[str]:
        out = []
        for output in outputs:
            rec = self.load(output)
            if rec is not None and rec.get("incomplete"):
                out.append(str(output))
        return out

    def changed(self, inst: RuleInstance, provenance: Provenance) -> Optional[str]:
        """
        Reason string if any output was made by a different command, params or
        input set than the instance would use now; None otherwise (including
        when nothing was recorded).
        """
        for output in inst.outputs:
            rec = self.load(output)
            if rec is None or rec.get("incomplete"):
                continue
            if rec.get("code") != provenance.code:
                return "code changed"
            if rec.get("params") != provenance.params:
                return "params changed"
            if rec.get("inputs") != provenance.inputs:
                return "set of input files changed"
        return None
