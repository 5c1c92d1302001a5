"""Core building blocks: rule descriptors/registry and the completion event."""

from rtbf.core.events import (
    CompletionEvents,
    CompletionSubscriber,
    load_completion_subscribers,
)
from rtbf.core.rules import (
    Param,
    Rule,
    RuleContext,
    RuleKind,
    RuleProvider,
    RuleRegistry,
    build_rule_registry,
    load_rule_providers,
)

__all__ = [
    "CompletionEvents",
    "CompletionSubscriber",
    "Param",
    "Rule",
    "RuleContext",
    "RuleKind",
    "RuleProvider",
    "RuleRegistry",
    "build_rule_registry",
    "load_completion_subscribers",
    "load_rule_providers",
]
