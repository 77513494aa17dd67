# patterns.py
"""
Wildcard path templates.

A template is a path with named placeholders:

    "data/{sample}.txt"
    "calls/{sample,[A-Z]+}.vcf"     # inline regex constraint
    "literal/{{braces}}.txt"        # escaped braces

Templates are expanded against value lists (``expand``), matched against
concrete paths (``match``) and used to discover wildcard values of existing
files (``glob_wildcards``).
"""
from __future__ import annotations

import itertools
import os
import re
from collections import namedtuple
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import WildcardError
from .model import Wildcards

DEFAULT_CONSTRAINT = ".+"

_PLACEHOLDER = (
    r"\{\s*(?P<name>\w+?)"
    r"(?:\s*,\s*(?P<constraint>(?:[^{}]+|\{\d+(?:,\d+)?\})*))?"
    r"\s*\}"
)
_TOKEN = re.compile(r"(?P<open>\{\{)|(?P<close>\}\})|" + _PLACEHOLDER)


@dataclass(frozen=True)
class Placeholder:
    name: str
    constraint: Optional[str] = None


Part = Union[str, Placeholder]


@dataclass(frozen=True)
class Template:
    text: str
    parts: Tuple[Part, ...]

    @property
    def names(self) -> Tuple[str, ...]:
        seen: List[str] = []
        for p in self.parts:
            if isinstance(p, Placeholder) and p.name not in seen:
                seen.append(p.name)
        return tuple(seen)

    @property
    def has_wildcards(self) -> bool:
        return any(isinstance(p, Placeholder) for p in self.parts)

    def regex(self, constraints: Optional[Mapping[str, str]] = None) -> "re.Pattern[str]":
        key = tuple(sorted((constraints or {}).items()))
        return _compile(self, key)

    def format(self, values: Mapping[str, Any], *, allow_missing: bool = False) -> str:
        out: List[str] = []
        for p in self.parts:
            if isinstance(p, str):
                out.append(p)
            elif p.name in values:
                out.append(str(values[p.name]))
            elif allow_missing:
                # keep the placeholder (and its constraint) for a later pass
                inner = p.name if p.constraint is None else f"{p.name},{p.constraint}"
                out.append("{" + inner + "}")
            else:
                raise WildcardError(None, f"no value for wildcard '{p.name}' in '{self.text}'")
        return "".join(out)


@lru_cache(maxsize=4096)
def parse(text: str) -> Template:
    parts: List[Part] = []
    literal: List[str] = []
    pos = 0
    for m in _TOKEN.finditer(text):
        literal.append(text[pos:m.start()])
        pos = m.end()
        if m.group("open"):
            literal.append("{")
        elif m.group("close"):
            literal.append("}")
        else:
            if literal:
                parts.append("".join(literal))
                literal = []
            parts.append(Placeholder(m.group("name"), m.group("constraint")))
    literal.append(text[pos:])
    tail = "".join(literal)
    if tail:
        parts.append(tail)
    return Template(text=text, parts=tuple(p for p in parts if p != ""))


@lru_cache(maxsize=4096)
def _compile(template: Template, constraints: Tuple[Tuple[str, str], ...]) -> "re.Pattern[str]":
    extra = dict(constraints)
    seen: set = set()
    chunks: List[str] = []
    for p in template.parts:
        if isinstance(p, str):
            chunks.append(re.escape(p))
        elif p.name in seen:
            chunks.append(f"(?P={p.name})")
        else:
            seen.add(p.name)
            constraint = p.constraint or extra.get(p.name) or DEFAULT_CONSTRAINT
            chunks.append(f"(?P<{p.name}>{constraint})")
    try:
        return re.compile("".join(chunks))
    except re.error as e:
        raise WildcardError(None, f"invalid constraint in '{template.text}': {e}") from e


def _as_template(t: Union[str, Template]) -> Template:
    return t if isinstance(t, Template) else parse(str(t))


# ----------------------------------------------------------------------
# Public helpers
# ----------------------------------------------------------------------

def match(
    template: Union[str, Template],
    path: str,
    constraints: Optional[Mapping[str, str]] = None,
) -> Optional[Wildcards]:
    """Return the wildcard binding under which ``template`` yields ``path``, or None."""
    tmpl = _as_template(template)
    m = tmpl.regex(constraints).fullmatch(normpath(path))
    if m is None:
        return None
    return Wildcards({k: v for k, v in m.groupdict().items() if v is not None})


def expand(
    templates: Union[str, Sequence[str]],
    *,
    allow_missing: bool = False,
    combinator: Callable[..., Iterable[Tuple[Any, ...]]] = itertools.product,
    **values: Any,
) -> List[str]:
    """
    Substitute value lists into one or more templates.

    Every combination (cartesian product by default, keyword order) yields one
    path. Templates are the outer loop. Plain strings count as one value.
    """
    if isinstance(templates, str):
        templates = [templates]

    out: List[str] = []
    for text in templates:
        tmpl = _as_template(text)
        keys = [k for k in values if k in tmpl.names]
        lists = [_as_values(values[k]) for k in keys]
        for combo in combinator(*lists):
            out.append(tmpl.format(dict(zip(keys, combo)), allow_missing=allow_missing))
    return out


def glob_wildcards(
    template: Union[str, Template],
    files: Optional[Iterable[str]] = None,
    constraints: Optional[Mapping[str, str]] = None,
):
    """
    Collect wildcard values of existing files matching ``template``.

    Returns a namedtuple with one list per wildcard, in template order and
    sorted by path so the result is stable across filesystems.
    """
    tmpl = _as_template(template)
    fields = tmpl.names
    Result = namedtuple("Wildcards", fields)  # type: ignore[misc]
    collected: Dict[str, List[str]] = {name: [] for name in fields}

    if files is None:
        files = _walk_from_prefix(tmpl)

    regex = tmpl.regex(constraints)
    for f in sorted(normpath(x) for x in files):
        m = regex.fullmatch(f)
        if m is None:
            continue
        for name in fields:
            collected[name].append(m.group(name))
    return Result(**collected)


class PatternExpander:
    """Template operations bound to workflow-wide wildcard constraints."""

    def __init__(self, constraints: Optional[Mapping[str, str]] = None):
        self.constraints: Dict[str, str] = dict(constraints or {})

    def _merged(self, extra: Optional[Mapping[str, str]]) -> Dict[str, str]:
        merged = dict(self.constraints)
        merged.update(extra or {})
        return merged

    def expand(self, templates: Union[str, Sequence[str]], **values: Any) -> List[str]:
        return expand(templates, **values)

    def match(
        self,
        template: Union[str, Template],
        path: str,
        constraints: Optional[Mapping[str, str]] = None,
    ) -> Optional[Wildcards]:
        return match(template, path, self._merged(constraints))

    def glob_wildcards(self, template: Union[str, Template], files: Optional[Iterable[str]] = None):
        return glob_wildcards(template, files, self.constraints)


# ----------------------------------------------------------------------
# Internals
# ----------------------------------------------------------------------

def _as_values(v: Any) -> List[Any]:
    if isinstance(v, (str, bytes)) or not isinstance(v, Iterable):
        return [v]
    return list(v)


def normpath(path: str) -> str:
    p = str(path).replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p


def _walk_from_prefix(tmpl: Template) -> List[str]:
    # Static prefix up to the first placeholder bounds the directory walk.
    prefix = ""
    for p in tmpl.parts:
        if isinstance(p, Placeholder):
            break
        prefix += p
    base = os.path.dirname(prefix) or "."
    root = Path(base)
    if not root.is_dir():
        return []

    found: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in list(filenames) + list(dirnames):
            full = os.path.join(dirpath, name)
            found.append(os.path.normpath(full) if base != "." else os.path.relpath(full, "."))
    return found
