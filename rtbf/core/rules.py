"""Rule registry - declarative deletion/replacement targets for shards.

A Rule names a table, a kind (DELETE or REPLACE), an equality predicate and,
for REPLACE, the columns to overwrite. Predicate and replacement values are
templates: any value may be a Param placeholder that is resolved against
the RuleContext of the request being executed.

Rules are contributed by providers: plain callables receiving the registry.
The registry is built once at process start (build_rule_registry) and is
frozen afterwards, so shard workers only ever read it.

Example provider module::

    from rtbf.core.rules import Param, RuleRegistry

    def register_rules(registry: RuleRegistry) -> None:
        registry.register_deletion_rule("my_ext_log", {"mel_actor": Param.ACTOR_ID})
"""

from __future__ import annotations

import importlib
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class RuleKind(StrEnum):
    DELETE = "delete"
    REPLACE = "replace"


class Param(StrEnum):
    """Placeholders resolved at apply time."""

    OLD_NAME = "old_name"
    NEW_NAME = "new_name"
    USER_ID = "user_id"
    ACTOR_ID = "actor_id"


@dataclass(frozen=True)
class RuleContext:
    """Per-(request, shard) values substituted into rule templates."""

    old_name: str
    new_name: str
    user_id: int
    actor_id: int | None = None

    def resolve(self, param: Param) -> Any:
        return getattr(self, param.value)


def _resolve_value(value: Any, context: RuleContext) -> Any:
    if isinstance(value, Param):
        return context.resolve(value)
    if isinstance(value, (list, tuple)):
        return [_resolve_value(v, context) for v in value]
    return value


def _references(template: Mapping[str, Any], param: Param) -> bool:
    for value in template.values():
        if value is param:
            return True
        if isinstance(value, (list, tuple)) and param in value:
            return True
    return False


@dataclass(frozen=True)
class Rule:
    """Typed description of one deletion or replacement."""

    table: str
    kind: RuleKind
    where: Mapping[str, Any]
    values: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.where:
            # An empty predicate would wipe the whole table
            raise ValueError(f"Rule on '{self.table}' must have at least one condition")
        if self.kind == RuleKind.REPLACE and not self.values:
            raise ValueError(f"Replacement rule on '{self.table}' must set at least one column")
        if self.kind == RuleKind.DELETE and self.values:
            raise ValueError(f"Deletion rule on '{self.table}' cannot set columns")
        object.__setattr__(self, "where", MappingProxyType(dict(self.where)))
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    @property
    def needs_actor(self) -> bool:
        return _references(self.where, Param.ACTOR_ID) or _references(
            self.values, Param.ACTOR_ID
        )

    def bind(self, context: RuleContext) -> tuple[dict[str, Any], dict[str, Any]]:
        """Return (where, values) with every placeholder resolved."""
        where = {col: _resolve_value(v, context) for col, v in self.where.items()}
        values = {col: _resolve_value(v, context) for col, v in self.values.items()}
        return where, values

    def describe(self) -> str:
        return f"{self.kind}:{self.table}"


RuleProvider = Callable[["RuleRegistry"], None]


class RuleRegistry:
    """Ordered, process-wide collection of rules.

    Registration order is preserved; the engine runs every deletion before
    any replacement. Multiple rules may target the same table.
    """

    def __init__(self) -> None:
        self._rules: list[Rule] = []
        self._frozen = False

    def _add(self, rule: Rule) -> Rule:
        if self._frozen:
            raise RuntimeError(
                f"Rule registry is frozen; cannot register {rule.describe()} after startup"
            )
        self._rules.append(rule)
        log.debug("rules.registered", table=rule.table, kind=rule.kind)
        return rule

    def register_deletion_rule(self, table: str, where: Mapping[str, Any]) -> Rule:
        return self._add(Rule(table=table, kind=RuleKind.DELETE, where=where))

    def register_replacement_rule(
        self,
        table: str,
        where: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> Rule:
        return self._add(Rule(table=table, kind=RuleKind.REPLACE, where=where, values=values))

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def rules(self) -> tuple[Rule, ...]:
        return tuple(self._rules)

    @property
    def deletions(self) -> tuple[Rule, ...]:
        return tuple(r for r in self._rules if r.kind == RuleKind.DELETE)

    @property
    def replacements(self) -> tuple[Rule, ...]:
        return tuple(r for r in self._rules if r.kind == RuleKind.REPLACE)

    def __len__(self) -> int:
        return len(self._rules)


def load_rule_providers(module_paths: Iterable[str]) -> list[RuleProvider]:
    """Import each module and return its ``register_rules`` callable.

    Raises:
        ImportError: If a module cannot be imported.
        AttributeError: If a module has no callable ``register_rules``.
    """
    providers: list[RuleProvider] = []
    for path in module_paths:
        module = importlib.import_module(path)
        provider = getattr(module, "register_rules", None)
        if not callable(provider):
            raise AttributeError(f"Rule provider module '{path}' has no register_rules()")
        providers.append(provider)
        log.info("rules.provider_loaded", module=path)
    return providers


def build_rule_registry(
    providers: Iterable[RuleProvider] = (),
    *,
    include_defaults: bool = True,
) -> RuleRegistry:
    """Build and freeze the registry: default rules first, then each provider once."""
    from rtbf.core.default_rules import register_default_rules

    registry = RuleRegistry()
    if include_defaults:
        register_default_rules(registry)
    for provider in providers:
        provider(registry)
    registry.freeze()

    log.info(
        "rules.registry_built",
        deletions=len(registry.deletions),
        replacements=len(registry.replacements),
    )
    return registry
