"""
Constraint Evaluator — Usage-control gate for every data delivery.

Rules are compiled into a fixed set of predicates before any agreement is
stored, and re-evaluated at each artifact request:

- COUNT                   — maximum number of accesses
- POLICY_EVALUATION_TIME  — half-open usage interval [AFTER, BEFORE)
- ELAPSED_TIME            — usable for a duration after contract start
- ENDPOINT                — callback URI of a NOTIFY duty
- pip_endpoint            — fact read from an external policy information point

A rule is satisfied only if all of its constraints are satisfied. Anything
the vocabulary cannot express is a PolicyParseError at compile time, so a
malformed rule is rejected when the agreement is created, never when data
is requested.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlsplit

from pydantic import TypeAdapter, ValidationError

from dataspace_negotiation.integrations.collaborators import (
    PipUnavailableError,
    PolicyInformationPoint,
)
from dataspace_negotiation.policy.schema import (
    Action,
    BinaryOperator,
    Constraint,
    ContractAgreement,
    LeftOperand,
    RuleKind,
)

logger = logging.getLogger(__name__)

_TIMESTAMP = TypeAdapter(datetime)
_DURATION = TypeAdapter(timedelta)

# Operators each left operand accepts
APPLICABLE_OPERATORS: dict[LeftOperand, frozenset[BinaryOperator]] = {
    LeftOperand.COUNT: frozenset({
        BinaryOperator.EQ,
        BinaryOperator.LT,
        BinaryOperator.LTEQ,
        BinaryOperator.GT,
        BinaryOperator.GTEQ,
    }),
    LeftOperand.POLICY_EVALUATION_TIME: frozenset({BinaryOperator.AFTER, BinaryOperator.BEFORE}),
    LeftOperand.ELAPSED_TIME: frozenset({BinaryOperator.SHORTER_EQ}),
    LeftOperand.ENDPOINT: frozenset({BinaryOperator.DEFINES_AS}),
}


class PolicyParseError(ValueError):
    """Raised when a rule uses terms outside the supported constraint vocabulary."""

    def __init__(self, message: str, rule_id: str | None = None) -> None:
        super().__init__(message)
        self.rule_id = rule_id


class PolicyPattern(str, enum.Enum):
    """Usage-control patterns recognised in compiled rules."""

    PROVIDE_ACCESS = "PROVIDE_ACCESS"
    PROHIBIT_ACCESS = "PROHIBIT_ACCESS"
    N_TIMES_USAGE = "N_TIMES_USAGE"
    DURATION_USAGE = "DURATION_USAGE"
    USAGE_DURING_INTERVAL = "USAGE_DURING_INTERVAL"
    USAGE_NOTIFICATION = "USAGE_NOTIFICATION"
    USAGE_LOGGING = "USAGE_LOGGING"


# ════════════════════════════════════════════════════════════════
# Predicates
# ════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class MaxAccess:
    """Access allowance derived from a COUNT constraint."""

    allowance: int
    operator: BinaryOperator
    literal: str
    pip_endpoint: str | None = None


@dataclass(frozen=True)
class TimeInterval:
    """Half-open usage interval [start, end)."""

    start: datetime
    end: datetime
    pip_endpoint: str | None = None

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass(frozen=True)
class UsageDuration:
    """Usage window measured from contract start."""

    duration: timedelta
    pip_endpoint: str | None = None

    def expires_at(self, contract_start: datetime) -> datetime:
        return contract_start + self.duration


@dataclass(frozen=True)
class RulePolicy:
    """A rule compiled into predicates."""

    kind: RuleKind
    action: Action
    pattern: PolicyPattern
    rule_id: str | None = None
    target: str | None = None
    max_access: MaxAccess | None = None
    interval: TimeInterval | None = None
    duration: UsageDuration | None = None
    notify_endpoints: tuple[str, ...] = ()
    logging_required: bool = False


@dataclass
class AccessDecision:
    """Result of evaluating an agreement for one artifact access."""

    granted: bool
    reason: str
    pattern: PolicyPattern
    notify_endpoints: list[str] = field(default_factory=list)
    logging_required: bool = False

    @property
    def is_allowed(self) -> bool:
        return self.granted


# ════════════════════════════════════════════════════════════════
# Literal readers
# ════════════════════════════════════════════════════════════════


def as_utc(moment: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_count(literal: str) -> int | None:
    """Read an integer literal; None when it is not an integral number."""
    text = literal.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    if not number.is_finite() or number != number.to_integral_value():
        return None
    return int(number)


def read_max_access(operator: BinaryOperator, literal: str) -> int:
    """
    Derive the access allowance of a COUNT constraint.

    EQ and LTEQ allow N accesses, LT allows N-1. GT and GTEQ state a lower
    bound, from which no allowance follows, so they allow none. A negative
    or unparsable N is clamped to 0, which denies every access.
    """
    count = parse_count(literal)
    if count is None:
        logger.warning("Unparsable COUNT literal %r, clamping allowance to 0", literal)
        return 0

    if operator in (BinaryOperator.EQ, BinaryOperator.LTEQ):
        allowance = count
    elif operator == BinaryOperator.LT:
        allowance = count - 1
    else:
        allowance = 0

    if allowance < 0:
        logger.warning(
            "Negative COUNT allowance (operator=%s literal=%r), clamping to 0",
            operator.value, literal,
        )
        return 0
    return allowance


def parse_timestamp(literal: str, rule_id: str | None = None) -> datetime:
    try:
        return as_utc(_TIMESTAMP.validate_python(literal.strip()))
    except ValidationError as exc:
        raise PolicyParseError(f"Invalid timestamp literal: {literal!r}", rule_id) from exc


def parse_duration(literal: str, rule_id: str | None = None) -> timedelta:
    try:
        duration = _DURATION.validate_python(literal.strip())
    except ValidationError as exc:
        raise PolicyParseError(f"Invalid duration literal: {literal!r}", rule_id) from exc
    if duration <= timedelta(0):
        raise PolicyParseError(f"Duration must be positive: {literal!r}", rule_id)
    return duration


def _check_uri(literal: str, rule_id: str | None) -> str:
    parts = urlsplit(literal.strip())
    if not parts.scheme or not parts.netloc:
        raise PolicyParseError(f"Invalid endpoint URI: {literal!r}", rule_id)
    return literal.strip()


# ════════════════════════════════════════════════════════════════
# Rule compilation
# ════════════════════════════════════════════════════════════════


def _group_constraints(
    constraints: list[Constraint], rule_id: str | None
) -> dict[LeftOperand, list[Constraint]]:
    grouped: dict[LeftOperand, list[Constraint]] = {operand: [] for operand in LeftOperand}
    for constraint in constraints:
        allowed = APPLICABLE_OPERATORS.get(constraint.left_operand, frozenset())
        if constraint.operator not in allowed:
            raise PolicyParseError(
                f"Operator {constraint.operator.value} is not applicable to "
                f"{constraint.left_operand.value}",
                rule_id,
            )
        grouped[constraint.left_operand].append(constraint)
    return grouped


def _parse_duty(duty: Any) -> tuple[tuple[str, ...], bool]:
    """Compile a duty into (notify endpoints, logging required)."""
    rule_id = duty.id
    if duty.action not in (Action.NOTIFY, Action.LOG):
        raise PolicyParseError(f"Duties cannot govern {duty.action.value}", rule_id)

    grouped = _group_constraints(duty.constraints, rule_id)
    for operand in (LeftOperand.COUNT, LeftOperand.ELAPSED_TIME, LeftOperand.POLICY_EVALUATION_TIME):
        if grouped[operand]:
            raise PolicyParseError(
                f"Duties cannot carry {operand.value} constraints", rule_id
            )

    endpoints = grouped[LeftOperand.ENDPOINT]
    if duty.action == Action.LOG:
        if endpoints:
            raise PolicyParseError("ENDPOINT constraints are only valid on NOTIFY duties", rule_id)
        return (), True

    if not endpoints:
        raise PolicyParseError("NOTIFY duty without ENDPOINT constraint", rule_id)
    for constraint in endpoints:
        if constraint.pip_endpoint:
            raise PolicyParseError("ENDPOINT constraints cannot consult a PIP", rule_id)
    return tuple(_check_uri(c.right_operand, rule_id) for c in endpoints), False


def classify(
    kind: RuleKind,
    max_access: MaxAccess | None,
    interval: TimeInterval | None,
    duration: UsageDuration | None,
    notify_endpoints: tuple[str, ...],
    logging_required: bool,
) -> PolicyPattern:
    """Name the usage pattern a compiled rule implements."""
    if kind == RuleKind.PROHIBITION:
        return PolicyPattern.PROHIBIT_ACCESS
    if notify_endpoints:
        return PolicyPattern.USAGE_NOTIFICATION
    if interval is not None:
        return PolicyPattern.USAGE_DURING_INTERVAL
    if duration is not None:
        return PolicyPattern.DURATION_USAGE
    if max_access is not None:
        return PolicyPattern.N_TIMES_USAGE
    if logging_required:
        return PolicyPattern.USAGE_LOGGING
    return PolicyPattern.PROVIDE_ACCESS


def parse_rule(rule: Any) -> RulePolicy:
    """
    Compile one rule into predicates.

    Raises:
        PolicyParseError: If the rule cannot be expressed in the vocabulary.
    """
    kind = rule.rule_kind
    rule_id = rule.id

    if kind == RuleKind.DUTY:
        endpoints, logging_required = _parse_duty(rule)
        return RulePolicy(
            kind=kind,
            action=rule.action,
            pattern=classify(kind, None, None, None, endpoints, logging_required),
            rule_id=rule_id,
            target=rule.target,
            notify_endpoints=endpoints,
            logging_required=logging_required,
        )

    if rule.action != Action.USE:
        raise PolicyParseError(
            f"{kind.value.capitalize()}s govern USE, not {rule.action.value}", rule_id
        )

    if kind == RuleKind.PROHIBITION:
        if rule.constraints:
            raise PolicyParseError("Prohibitions cannot carry constraints", rule_id)
        return RulePolicy(
            kind=kind,
            action=rule.action,
            pattern=PolicyPattern.PROHIBIT_ACCESS,
            rule_id=rule_id,
            target=rule.target,
        )

    grouped = _group_constraints(rule.constraints, rule_id)

    if grouped[LeftOperand.ENDPOINT]:
        raise PolicyParseError("ENDPOINT constraints are only valid on NOTIFY duties", rule_id)

    max_access = None
    counts = grouped[LeftOperand.COUNT]
    if len(counts) > 1:
        raise PolicyParseError("A rule may carry at most one COUNT constraint", rule_id)
    if counts:
        count = counts[0]
        max_access = MaxAccess(
            allowance=read_max_access(count.operator, count.right_operand),
            operator=count.operator,
            literal=count.right_operand,
            pip_endpoint=count.pip_endpoint,
        )

    interval = None
    bounds = grouped[LeftOperand.POLICY_EVALUATION_TIME]
    if bounds:
        afters = [c for c in bounds if c.operator == BinaryOperator.AFTER]
        befores = [c for c in bounds if c.operator == BinaryOperator.BEFORE]
        if len(afters) != 1 or len(befores) != 1:
            raise PolicyParseError(
                "A usage interval needs exactly one AFTER and one BEFORE bound", rule_id
            )
        start = parse_timestamp(afters[0].right_operand, rule_id)
        end = parse_timestamp(befores[0].right_operand, rule_id)
        if start >= end:
            raise PolicyParseError("Usage interval start must precede its end", rule_id)
        interval = TimeInterval(
            start=start,
            end=end,
            pip_endpoint=afters[0].pip_endpoint or befores[0].pip_endpoint,
        )

    duration = None
    elapsed = grouped[LeftOperand.ELAPSED_TIME]
    if len(elapsed) > 1:
        raise PolicyParseError("A rule may carry at most one ELAPSED_TIME constraint", rule_id)
    if elapsed:
        duration = UsageDuration(
            duration=parse_duration(elapsed[0].right_operand, rule_id),
            pip_endpoint=elapsed[0].pip_endpoint,
        )

    notify_endpoints: tuple[str, ...] = ()
    logging_required = False
    for duty in rule.post_duties:
        endpoints, logs = _parse_duty(duty)
        notify_endpoints += endpoints
        logging_required = logging_required or logs

    return RulePolicy(
        kind=kind,
        action=rule.action,
        pattern=classify(kind, max_access, interval, duration, notify_endpoints, logging_required),
        rule_id=rule_id,
        target=rule.target,
        max_access=max_access,
        interval=interval,
        duration=duration,
        notify_endpoints=notify_endpoints,
        logging_required=logging_required,
    )


def parse_rules(rules: list[Any]) -> list[RulePolicy]:
    """Compile every rule; the first vocabulary error aborts."""
    return [parse_rule(rule) for rule in rules]


# ════════════════════════════════════════════════════════════════
# Evaluation
# ════════════════════════════════════════════════════════════════


class ConstraintEvaluator:
    """
    Evaluates agreed rules against runtime facts.

    Local facts are the artifact's access count and the current time.
    Constraints with a PIP endpoint read their fact from the configured
    PolicyInformationPoint instead; an unreachable PIP denies access.
    """

    def __init__(self, pip: PolicyInformationPoint | None = None) -> None:
        self.pip = pip

    def parse_rules(self, rules: list[Any]) -> list[RulePolicy]:
        return parse_rules(rules)

    def evaluate(
        self,
        agreement: ContractAgreement,
        artifact_id: str,
        access_count: int,
        now: datetime | None = None,
        action: Action = Action.USE,
    ) -> AccessDecision:
        """
        Decide whether one more access to the artifact is allowed.

        Args:
            agreement: The confirmed agreement named as transfer contract.
            artifact_id: The requested artifact.
            access_count: Accesses already granted under this agreement.
            now: Evaluation time (defaults to the current UTC time).
            action: The action to be exercised.

        Returns:
            AccessDecision with the outcome, reason and notification duties.

        Raises:
            PolicyParseError: If the stored rules no longer compile.
        """
        moment = as_utc(now or datetime.now(timezone.utc))
        contract_start = as_utc(agreement.contract_start)
        contract_end = as_utc(agreement.contract_end)

        if moment < contract_start:
            return self._deny("Contract agreement is not yet valid.", PolicyPattern.PROHIBIT_ACCESS)
        if moment >= contract_end:
            return self._deny("Contract agreement has expired.", PolicyPattern.PROHIBIT_ACCESS)

        policies = parse_rules(agreement.rules_for(artifact_id))

        for policy in policies:
            if policy.kind == RuleKind.PROHIBITION and policy.action == action:
                return self._deny(
                    f"Usage of {artifact_id} is prohibited.", PolicyPattern.PROHIBIT_ACCESS
                )

        permissions = [
            p for p in policies if p.kind == RuleKind.PERMISSION and p.action == action
        ]
        if not permissions:
            return self._deny(
                f"No permission to {action.value} {artifact_id}.", PolicyPattern.PROHIBIT_ACCESS
            )

        for policy in permissions:
            try:
                reason = self._check_permission(
                    policy, agreement, artifact_id, access_count, moment, contract_start
                )
            except PipUnavailableError as exc:
                logger.warning(
                    "PIP lookup failed, denying access: agreement=%s artifact=%s error=%s",
                    agreement.id, artifact_id, exc,
                )
                return self._deny("Policy information point unavailable.", policy.pattern)
            if reason is not None:
                return self._deny(reason, policy.pattern)

        notify_endpoints = [e for p in policies for e in p.notify_endpoints]
        logging_required = any(p.logging_required for p in policies)
        pattern = permissions[0].pattern
        if notify_endpoints and pattern == PolicyPattern.PROVIDE_ACCESS:
            pattern = PolicyPattern.USAGE_NOTIFICATION

        logger.debug(
            "Access granted: agreement=%s artifact=%s pattern=%s count=%d",
            agreement.id, artifact_id, pattern.value, access_count,
        )
        return AccessDecision(
            granted=True,
            reason="Access granted.",
            pattern=pattern,
            notify_endpoints=notify_endpoints,
            logging_required=logging_required,
        )

    # ── Internal ────────────────────────────────────────────────

    def _check_permission(
        self,
        policy: RulePolicy,
        agreement: ContractAgreement,
        artifact_id: str,
        access_count: int,
        moment: datetime,
        contract_start: datetime,
    ) -> str | None:
        """Return the denial reason, or None when every predicate holds."""
        if policy.max_access is not None:
            count = access_count
            if policy.max_access.pip_endpoint:
                count = self._fetch_count(
                    policy.max_access.pip_endpoint, agreement.id, artifact_id
                )
            if count >= policy.max_access.allowance:
                return (
                    f"Maximum number of accesses ({policy.max_access.allowance}) reached."
                )

        if policy.interval is not None:
            at = moment
            if policy.interval.pip_endpoint:
                at = self._fetch_time(
                    policy.interval.pip_endpoint,
                    LeftOperand.POLICY_EVALUATION_TIME,
                    agreement.id,
                    artifact_id,
                )
            if not policy.interval.contains(at):
                return "Usage is outside the agreed time interval."

        if policy.duration is not None:
            at = moment
            if policy.duration.pip_endpoint:
                at = self._fetch_time(
                    policy.duration.pip_endpoint,
                    LeftOperand.ELAPSED_TIME,
                    agreement.id,
                    artifact_id,
                )
            if at > policy.duration.expires_at(contract_start):
                return "Agreed usage duration has elapsed."

        return None

    def _require_pip(self) -> PolicyInformationPoint:
        if self.pip is None:
            raise PipUnavailableError("No policy information point configured")
        return self.pip

    def _fetch_count(self, endpoint: str, agreement_id: str, artifact_id: str) -> int:
        raw = self._require_pip().fetch(endpoint, LeftOperand.COUNT, agreement_id, artifact_id)
        count = parse_count(str(raw))
        if count is None or count < 0:
            raise PipUnavailableError(f"Unusable access count from PIP: {raw!r}")
        return count

    def _fetch_time(
        self, endpoint: str, operand: LeftOperand, agreement_id: str, artifact_id: str
    ) -> datetime:
        raw = self._require_pip().fetch(endpoint, operand, agreement_id, artifact_id)
        try:
            return as_utc(_TIMESTAMP.validate_python(str(raw).strip()))
        except ValidationError as exc:
            raise PipUnavailableError(f"Unusable timestamp from PIP: {raw!r}") from exc

    @staticmethod
    def _deny(reason: str, pattern: PolicyPattern) -> AccessDecision:
        return AccessDecision(granted=False, reason=reason, pattern=pattern)
