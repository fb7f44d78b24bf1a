"""
Usage Policy Schema — Pydantic models for rules, constraints and contracts.

These models are the canonical data structures for usage terms exchanged
between two connectors. A contract moves through three shapes:

- ContractOffer      — provider-held terms for a resource, no parties bound
- ContractRequest    — consumer-proposed terms, assignee bound to the consumer
- ContractAgreement  — persisted outcome, assigner and assignee both bound

Rules form a closed tagged union (Permission | Prohibition | Duty) keyed by
the ``kind`` field. Constraint operands and operators are closed enumerations,
so an out-of-vocabulary term fails model validation instead of surfacing
later during data delivery.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


# ════════════════════════════════════════════════════════════════
# Vocabulary
# ════════════════════════════════════════════════════════════════


class RuleKind(str, enum.Enum):
    """Rule variants of a usage contract."""

    PERMISSION = "permission"
    PROHIBITION = "prohibition"
    DUTY = "duty"


class Action(str, enum.Enum):
    """Actions a rule may govern."""

    USE = "USE"
    NOTIFY = "NOTIFY"
    LOG = "LOG"


class LeftOperand(str, enum.Enum):
    """Facts a constraint may restrict."""

    COUNT = "COUNT"
    ELAPSED_TIME = "ELAPSED_TIME"
    POLICY_EVALUATION_TIME = "POLICY_EVALUATION_TIME"
    ENDPOINT = "ENDPOINT"


class BinaryOperator(str, enum.Enum):
    """Comparison operators a constraint may apply."""

    EQ = "EQ"
    LT = "LT"
    LTEQ = "LTEQ"
    GT = "GT"
    GTEQ = "GTEQ"
    AFTER = "AFTER"
    BEFORE = "BEFORE"
    SHORTER_EQ = "SHORTER_EQ"
    DEFINES_AS = "DEFINES_AS"


# ════════════════════════════════════════════════════════════════
# Constraints and Rules
# ════════════════════════════════════════════════════════════════


class Constraint(BaseModel):
    """A single (operand, operator, literal) predicate on a rule."""

    model_config = {"frozen": True}

    left_operand: LeftOperand
    operator: BinaryOperator
    right_operand: str = Field(
        description="Literal value: integer, ISO-8601 duration or timestamp, or URI"
    )
    right_operand_type: str | None = Field(
        default=None, description="Datatype hint, e.g. 'xsd:decimal' or 'xsd:duration'"
    )
    pip_endpoint: str | None = Field(
        default=None,
        description="Policy information point consulted for this constraint's fact",
    )

    @field_validator("right_operand", mode="before")
    @classmethod
    def _literal_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class _RuleBase(BaseModel):
    model_config = {"frozen": True}

    id: str | None = Field(default=None, description="Rule identifier (not compared)")
    title: str | None = None
    action: Action = Action.USE
    constraints: list[Constraint] = Field(default_factory=list)
    assigner: str | None = Field(default=None, description="Party granting the rule")
    assignee: str | None = Field(default=None, description="Party bound by the rule")
    target: str | None = Field(default=None, description="Governed artifact URI")

    @property
    def rule_kind(self) -> RuleKind:
        return RuleKind(self.kind)  # type: ignore[attr-defined]

    def with_parties(
        self, assigner: str | None = None, assignee: str | None = None
    ) -> "_RuleBase":
        """Return a copy with assigner and/or assignee bound."""
        update: dict[str, Any] = {}
        if assigner is not None:
            update["assigner"] = assigner
        if assignee is not None:
            update["assignee"] = assignee
        return self.model_copy(update=update)


class Duty(_RuleBase):
    """An obligation, e.g. notify an endpoint after use."""

    kind: Literal["duty"] = "duty"


class Prohibition(_RuleBase):
    """A forbidden action on the target."""

    kind: Literal["prohibition"] = "prohibition"


class Permission(_RuleBase):
    """An allowed action on the target, optionally carrying post-use duties."""

    kind: Literal["permission"] = "permission"
    post_duties: list[Duty] = Field(default_factory=list)

    def with_parties(
        self, assigner: str | None = None, assignee: str | None = None
    ) -> "Permission":
        bound = super().with_parties(assigner=assigner, assignee=assignee)
        duties = [d.with_parties(assigner=assigner, assignee=assignee) for d in self.post_duties]
        return bound.model_copy(update={"post_duties": duties})


Rule = Annotated[Union[Permission, Prohibition, Duty], Field(discriminator="kind")]


def rule_targets(rules: list[Any]) -> list[str]:
    """Return the distinct rule targets in first-seen order."""
    targets: list[str] = []
    for rule in rules:
        if rule.target and rule.target not in targets:
            targets.append(rule.target)
    return targets


def bind_parties(rules: list[Any], assigner: str | None = None, assignee: str | None = None) -> list[Any]:
    """Bind assigner/assignee on every rule (and every post duty)."""
    return [rule.with_parties(assigner=assigner, assignee=assignee) for rule in rules]


# ════════════════════════════════════════════════════════════════
# Contracts
# ════════════════════════════════════════════════════════════════


class ContractOffer(BaseModel):
    """
    Provider-held usage terms for one resource.

    Rules carry their target artifacts but no assigner or assignee yet.
    """

    id: str = Field(default_factory=lambda: f"urn:uuid:{uuid4()}")
    resource_id: str | None = None
    rules: list[Rule] = Field(default_factory=list)

    @property
    def targets(self) -> list[str]:
        return rule_targets(self.rules)

    def rules_for(self, artifact_id: str) -> list[Any]:
        """Rules of this offer applying to one artifact."""
        return [r for r in self.rules if r.target in (None, artifact_id)]


class ContractRequest(BaseModel):
    """Consumer-proposed usage terms. Transient, never persisted by the provider."""

    id: str = Field(default_factory=lambda: f"urn:uuid:{uuid4()}")
    consumer: str | None = None
    rules: list[Rule] = Field(default_factory=list)
    contract_start: datetime | None = None
    contract_end: datetime | None = None

    @property
    def targets(self) -> list[str]:
        return rule_targets(self.rules)

    def rules_for(self, artifact_id: str) -> list[Any]:
        return [r for r in self.rules if r.target == artifact_id]


class ContractAgreement(BaseModel):
    """
    Confirmed usage terms between provider and consumer.

    Immutable once persisted; renegotiation yields a new agreement id.
    """

    model_config = {"frozen": True}

    id: str
    provider: str
    consumer: str
    contract_date: datetime
    contract_start: datetime
    contract_end: datetime
    rules: list[Rule] = Field(default_factory=list)

    @property
    def targets(self) -> list[str]:
        return rule_targets(self.rules)

    def rules_for(self, artifact_id: str) -> list[Any]:
        return [r for r in self.rules if r.target in (None, artifact_id)]
