"""
Rule Matcher — structural comparison of usage rules.

Two rule sets match when they grant the same things under the same
conditions. Identifiers, titles and parties are bookkeeping and are dropped
before comparing; the rule kind, action, constraint content and post duties
are kept. Targets are dropped only when comparing the rules of a single
target against an offer; everywhere else a rule moved to another artifact is
a different rule. Rules are bucketed by kind and each bucket is compared as a
multiset, so the order in which a peer lists its rules never matters, while
any change of content does.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from dataspace_negotiation.negotiation.errors import ContractContentError
from dataspace_negotiation.policy.schema import RuleKind

logger = logging.getLogger(__name__)


def normalize_constraint(constraint: Any) -> dict[str, Any]:
    return {
        "left_operand": constraint.left_operand.value,
        "operator": constraint.operator.value,
        "right_operand": constraint.right_operand.strip(),
        "pip_endpoint": constraint.pip_endpoint,
    }


def normalize_rule(rule: Any, with_targets: bool = False) -> dict[str, Any]:
    """Reduce a rule to the content that takes part in comparison."""
    normalized: dict[str, Any] = {
        "kind": rule.rule_kind.value,
        "action": rule.action.value,
        "constraints": [normalize_constraint(c) for c in rule.constraints],
    }
    if with_targets:
        normalized["target"] = rule.target
    duties = getattr(rule, "post_duties", None)
    if duties:
        normalized["post_duties"] = sorted(
            canonical(normalize_rule(d, with_targets)) for d in duties
        )
    return normalized


def canonical(value: dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def bucket_by_kind(rules: list[Any], with_targets: bool = False) -> dict[RuleKind, list[str]]:
    """Canonical rule forms grouped by rule kind, each bucket sorted."""
    buckets: dict[RuleKind, list[str]] = {kind: [] for kind in RuleKind}
    for rule in rules:
        buckets[rule.rule_kind].append(canonical(normalize_rule(rule, with_targets)))
    for forms in buckets.values():
        forms.sort()
    return buckets


def canonical_rules(rules: list[Any], with_targets: bool = True) -> str:
    """A single canonical string for a rule set, independent of rule order."""
    buckets = bucket_by_kind(rules, with_targets)
    return canonical({kind.value: forms for kind, forms in buckets.items()})


def match(offer_rules: list[Any], request_rules: list[Any], with_targets: bool = False) -> bool:
    """
    Return True if both rule sets have the same content, per rule kind.

    Targets are ignored unless ``with_targets`` is set; callers comparing
    the rules of one target against an offer leave it unset.
    """
    offered = bucket_by_kind(offer_rules, with_targets)
    requested = bucket_by_kind(request_rules, with_targets)
    for kind in RuleKind:
        if offered[kind] != requested[kind]:
            logger.debug(
                "Rule mismatch in %s bucket: offered=%d requested=%d",
                kind.value, len(offered[kind]), len(requested[kind]),
            )
            return False
    return True


# ── Content validation ─────────────────────────────────────────


def validate_rule_assigner(rules: list[Any], expected: str) -> None:
    """
    Every rule must be granted by the expected party.

    Raises:
        ContractContentError: If any rule names a different assigner.
    """
    for rule in rules:
        if rule.assigner != expected:
            raise ContractContentError(
                f"Invalid assigner {rule.assigner!r} on rule {rule.id or '<anonymous>'}"
            )


def validate_rule_assignee(rules: list[Any], expected: str) -> None:
    """
    Every rule must bind the expected party.

    Raises:
        ContractContentError: If any rule names a different assignee.
    """
    for rule in rules:
        if rule.assignee != expected:
            raise ContractContentError(
                f"Invalid assignee {rule.assignee!r} on rule {rule.id or '<anonymous>'}"
            )


def validate_rule_content(expected_rules: list[Any], received_rules: list[Any]) -> None:
    """
    Received rules must have the same content, on the same targets, as the
    expected ones.

    Raises:
        ContractContentError: If the rule sets do not match.
    """
    if not match(expected_rules, received_rules, with_targets=True):
        raise ContractContentError("Rules do not match the requested rules")
