# registry.py
from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import AmbiguousProducer, DuplicateRuleName, WildcardError
from .model import Rule, Wildcards
from .patterns import PatternExpander, parse


class RuleRegistry:
    """
    Holds rule definitions in registration order and answers
    "which rule produces this path?".
    """

    def __init__(self, expander: Optional[PatternExpander] = None):
        self.expander = expander or PatternExpander()
        self._rules: Dict[str, Rule] = {}
        self._order: Dict[str, int] = {}
        # (higher, lower) pairs from ruleorder declarations
        self._precedence: set = set()

    # ---- registration ----
    def register(self, rule: Rule) -> None:
        if rule.name in self._rules:
            raise DuplicateRuleName(rule.name)
        _validate_wildcards(rule)
        self._order[rule.name] = len(self._rules)
        self._rules[rule.name] = rule

    def register_all(self, rules: Iterable[Rule]) -> None:
        for r in rules:
            self.register(r)

    def ruleorder(self, *names: str) -> None:
        """``ruleorder("a", "b", "c")``: a beats b beats c when both match a path."""
        for i, higher in enumerate(names):
            for lower in names[i + 1:]:
                self._precedence.add((higher, lower))

    # ---- lookup ----
    def get(self, name: str) -> Rule:
        return self._rules[name]

    def __contains__(self, name: object) -> bool:
        return name in self._rules

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    @property
    def rules(self) -> List[Rule]:
        return list(self._rules.values())

    def order_of(self, name: str) -> int:
        return self._order[name]

    def first_rule(self) -> Optional[Rule]:
        return next(iter(self._rules.values()), None)

    def find_producers(self, path: str) -> List[Tuple[Rule, Wildcards]]:
        """
        Match ``path`` against every rule's output templates.

        Returns at most one (rule, wildcards) pair; raises AmbiguousProducer
        when several rules match and no ruleorder settles it.
        """
        matches: List[Tuple[Rule, Wildcards]] = []
        for rule in self._rules.values():
            for template in rule.output_templates:
                wc = self.expander.match(template, path, rule.wildcard_constraints)
                if wc is not None:
                    matches.append((rule, wc))
                    break

        if len(matches) <= 1:
            return matches

        winners = [
            m for m in matches
            if not any((other.name, m[0].name) in self._precedence for other, _ in matches)
        ]
        if len(winners) == 1:
            return winners
        raise AmbiguousProducer(path=path, rules=[r.name for r, _ in (winners or matches)])


def _validate_wildcards(rule: Rule) -> None:
    output_sets = [set(parse(t).names) for t in rule.output_templates]
    if output_sets and any(s != output_sets[0] for s in output_sets[1:]):
        raise WildcardError(rule.name, "all outputs must use the same wildcards")

    known = output_sets[0] if output_sets else set()
    templates: List[str] = []
    for _, v in rule.inputs:
        if isinstance(v, str):
            templates.append(v)
        elif isinstance(v, tuple):
            templates.extend(v)
    if rule.log:
        templates.append(rule.log)
    for t in templates:
        unknown = set(parse(t).names) - known
        if unknown:
            raise WildcardError(
                rule.name,
                f"wildcards {sorted(unknown)} in '{t}' do not appear in the outputs",
            )
