"""Admission policy engine for deployment descriptors.

Rules are data: each one names a scope (the pod or every container), a field of
the descriptor, and an operator describing the *forbidden* condition. The
evaluator walks the rules in declaration order and reports one violation per
match. Fields a rule marks as ``required`` fail closed when absent.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict, field_validator

from deploygate.contracts.models import (
    ContainerDescriptor,
    DeploymentDescriptor,
    GateResult,
    Violation,
)
from deploygate.contracts.types import GateName
from deploygate.settings import DEFAULT_POLICY_PATH


class RuleScope(str, Enum):
    POD = "pod"
    CONTAINER = "container"


class RuleOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    MISSING = "missing"
    EMPTY = "empty"
    IN = "in"


_POD_FIELDS = frozenset(DeploymentDescriptor.model_fields) - {"manifest", "containers"}
_CONTAINER_FIELDS = frozenset(ContainerDescriptor.model_fields)


class PolicyRule(BaseModel):
    """One admission rule; matching the predicate denies the deployment."""

    model_config = ConfigDict(frozen=True)

    id: str
    scope: RuleScope
    field: str
    operator: RuleOperator
    value: Any = None
    required: bool = False
    message: str

    @field_validator("field")
    @classmethod
    def _known_field(cls, value: str) -> str:
        if value not in _POD_FIELDS | _CONTAINER_FIELDS:
            raise ValueError(f"unknown descriptor field: {value}")
        return value

    def matches(self, subject: BaseModel) -> tuple[bool, bool]:
        """Return ``(violated, field_missing)`` for a pod or container subject."""
        actual = getattr(subject, self.field, None)
        missing = _is_missing(actual)
        if self.operator is RuleOperator.MISSING:
            return missing, False
        if self.operator is RuleOperator.EMPTY:
            return actual is not None and not actual, False
        if missing:
            return self.required, self.required
        if self.operator is RuleOperator.EQUALS:
            return actual == self.value, False
        if self.operator is RuleOperator.NOT_EQUALS:
            return actual != self.value, False
        return actual in (self.value or ()), False


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (dict, list, str)) and not value:
        return True
    return False


@dataclass(frozen=True, slots=True)
class RuleSet:
    """Ordered, immutable collection of admission rules."""

    rules: tuple[PolicyRule, ...]
    source: str = "<inline>"

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for rule in self.rules:
            if rule.id in seen:
                raise ValueError(f"duplicate policy rule id: {rule.id}")
            seen.add(rule.id)
            if rule.scope is RuleScope.POD and rule.field not in _POD_FIELDS:
                raise ValueError(f"rule {rule.id}: {rule.field} is not a pod field")
            if rule.scope is RuleScope.CONTAINER and rule.field not in _CONTAINER_FIELDS:
                raise ValueError(f"rule {rule.id}: {rule.field} is not a container field")

    @classmethod
    def from_dicts(cls, items: Iterable[dict[str, Any]], source: str = "<inline>") -> RuleSet:
        return cls(rules=tuple(PolicyRule.model_validate(item) for item in items), source=source)

    @classmethod
    def load(cls, path: Path) -> RuleSet:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return cls.from_dicts(data.get("rules", []), source=str(path))

    def __iter__(self) -> Iterator[PolicyRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)


def evaluate(descriptor: DeploymentDescriptor, ruleset: RuleSet) -> GateResult:
    """Evaluate a descriptor against a rule set.

    Pure and deterministic: violations are ordered by rule declaration order,
    then by container order within the descriptor.
    """
    environment = descriptor.environment.value
    violations: list[Violation] = []
    for rule in ruleset.rules:
        if rule.scope is RuleScope.POD:
            subjects: list[tuple[str | None, BaseModel]] = [(None, descriptor)]
        else:
            subjects = [(container.name, container) for container in descriptor.containers]
        for container_name, subject in subjects:
            violated, missing = rule.matches(subject)
            if not violated:
                continue
            message = rule.message
            if missing:
                message = f"{rule.message} ({rule.field} is not set)"
            violations.append(
                Violation(
                    rule_id=rule.id,
                    message=message,
                    container=container_name,
                    environment=environment,
                )
            )
    return GateResult.from_violations(GateName.POLICY.value, violations)


Evaluator = Callable[[DeploymentDescriptor, RuleSet], GateResult]


@lru_cache
def load_ruleset(path: Path | None = None) -> RuleSet:
    """Load and cache the process-wide rule set for ``path``."""
    return RuleSet.load(path or DEFAULT_POLICY_PATH)


def reload_ruleset() -> None:
    """Drop cached rule sets so the next ``load_ruleset`` reads from disk."""
    load_ruleset.cache_clear()
