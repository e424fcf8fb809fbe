"""Rule Evaluator - Safe evaluation of permission, validation and automation rules"""
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from ..domain.models import CallerContext, Decision, SideEffectIntent
from ..domain.rules import (
    Action, AllOfRule, AnyOfRule, ComparisonRule, MalformedRule, NotifyAction, NotRule,
    PermissionRule, PresenceRule, RequestApprovalAction, Rule, SetFieldAction
)
from ..domain.enums import ConditionOperator, IntentKind
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Context roots a recipient entry may point into, e.g. "entity.owner_email"
_RECIPIENT_ROOTS = ("state_data.", "entity.", "caller.")


class RuleEvaluator:
    """
    Evaluate rules against an evaluation context

    Uses a small typed rule tree - no eval() or exec(). Any rule that cannot be
    evaluated denies (fail closed).

    The context looks like::

        {
            "state_data": {...},   # instance.state_data
            "entity": {...},       # entity snapshot
            "caller": {"user_id": ..., "roles": [...], "groups": [...], "permissions": [...]}
        }
    """

    def build_context(
        self,
        caller_permissions: Iterable[str],
        state_data: Dict[str, Any],
        entity_snapshot: Dict[str, Any],
        caller: Optional[CallerContext] = None
    ) -> Dict[str, Any]:
        """Assemble the evaluation context for one request"""
        return {
            "state_data": dict(state_data),
            "entity": dict(entity_snapshot or {}),
            "caller": {
                "user_id": caller.user_id if caller else None,
                "roles": list(caller.roles) if caller else [],
                "groups": list(caller.groups) if caller else [],
                "permissions": sorted(set(caller_permissions)),
            },
        }

    def evaluate(
        self,
        rule: Union[Rule, PermissionRule, None],
        context: Dict[str, Any]
    ) -> Decision:
        """
        Evaluate a permission or validation rule

        Args:
            rule: Parsed rule; None means no constraint
            context: Evaluation context from build_context

        Returns:
            Decision.allow() or Decision.deny(reason)
        """
        if rule is None:
            return Decision.allow()

        if isinstance(rule, PermissionRule):
            held: Set[str] = set(context.get("caller", {}).get("permissions", []))
            missing = [p for p in rule.required if p not in held]
            if missing:
                return Decision.deny(f"missing permissions: {', '.join(missing)}")
            return Decision.allow()

        reason = self._check(rule, context)
        if reason is None:
            return Decision.allow()
        return Decision.deny(reason)

    def evaluate_all(
        self,
        rules: Iterable[Union[Rule, PermissionRule, None]],
        context: Dict[str, Any]
    ) -> Decision:
        """Evaluate rules in order; the first denial wins"""
        for rule in rules:
            decision = self.evaluate(rule, context)
            if not decision.allowed:
                return decision
        return Decision.allow()

    def apply(
        self,
        actions: List[Action],
        context: Dict[str, Any],
        instance_id: Optional[str] = None,
        transition_id: Optional[str] = None
    ) -> List[SideEffectIntent]:
        """
        Turn automation actions into side-effect intents

        Malformed actions are skipped and logged; the rest still run.
        """
        intents: List[SideEffectIntent] = []

        for action in actions:
            if isinstance(action, MalformedRule):
                logger.error(
                    f"Skipping malformed automation action: {action.reason}",
                    extra={"instance_id": instance_id, "transition_id": transition_id, "reason": action.source}
                )
                continue

            if isinstance(action, SetFieldAction):
                intents.append(SideEffectIntent(
                    kind=IntentKind.SET_FIELD,
                    payload={"field": action.field, "value": action.value},
                    instance_id=instance_id,
                    transition_id=transition_id
                ))

            elif isinstance(action, NotifyAction):
                payload = dict(action.payload)
                payload.setdefault("instance_id", instance_id)
                payload.setdefault("transition_id", transition_id)
                intents.append(SideEffectIntent(
                    kind=IntentKind.NOTIFY,
                    template_key=action.template_key,
                    recipients=self._resolve_recipients(action.recipients, context),
                    payload=payload,
                    instance_id=instance_id,
                    transition_id=transition_id
                ))

            elif isinstance(action, RequestApprovalAction):
                intents.append(SideEffectIntent(
                    kind=IntentKind.REQUEST_APPROVAL,
                    payload={"transition_id": action.transition_id},
                    instance_id=instance_id,
                    transition_id=action.transition_id
                ))

        return intents

    def _check(self, rule: Rule, context: Dict[str, Any]) -> Optional[str]:
        """Return None when the rule holds, otherwise the reason it failed"""
        try:
            if isinstance(rule, MalformedRule):
                return rule.reason

            if isinstance(rule, ComparisonRule):
                actual = self._get_field_value(rule.field, context)
                if self._compare(actual, rule.operator, rule.value):
                    return None
                return f"{rule.field} {rule.operator.value} {rule.value!r} not satisfied (was {actual!r})"

            if isinstance(rule, PresenceRule):
                actual = self._get_field_value(rule.field, context)
                if self._is_empty(actual) != rule.present:
                    return None
                return f"{rule.field} is required" if rule.present else f"{rule.field} must be empty"

            if isinstance(rule, AllOfRule):
                for child in rule.rules:
                    reason = self._check(child, context)
                    if reason is not None:
                        return reason
                return None

            if isinstance(rule, AnyOfRule):
                if not rule.rules:
                    return None
                reasons = []
                for child in rule.rules:
                    reason = self._check(child, context)
                    if reason is None:
                        return None
                    reasons.append(reason)
                return "none of: " + "; ".join(reasons)

            if isinstance(rule, NotRule):
                if self._check(rule.rule, context) is None:
                    return "negated rule was satisfied"
                return None

            return f"unsupported rule {type(rule).__name__}"

        except Exception as e:
            logger.warning(f"Rule evaluation failed: {e}")
            return f"rule evaluation failed: {e}"  # Fail closed

    def _get_field_value(self, field_path: str, context: Dict[str, Any]) -> Any:
        """
        Get field value from context using dot notation

        Example: "entity.amount" -> context["entity"]["amount"]
        """
        parts = field_path.split(".")
        value: Any = context

        for part in parts:
            if isinstance(value, dict):
                value = value.get(part)
            else:
                return None

        return value

    def _resolve_recipients(self, recipients: List[str], context: Dict[str, Any]) -> List[str]:
        """Expand recipients that point into the context; keep literals as-is"""
        resolved: List[str] = []
        for recipient in recipients:
            if not recipient.startswith(_RECIPIENT_ROOTS):
                resolved.append(recipient)
                continue
            value = self._get_field_value(recipient, context)
            if isinstance(value, list):
                resolved.extend(str(v) for v in value if v)
            elif value:
                resolved.append(str(value))
        return list(dict.fromkeys(resolved))

    @staticmethod
    def _is_empty(value: Any) -> bool:
        return value is None or value == "" or value == [] or value == {}

    def _compare(
        self,
        field_value: Any,
        operator: ConditionOperator,
        compare_value: Any
    ) -> bool:
        """Compare values using operator"""

        if operator == ConditionOperator.EQUALS:
            return field_value == compare_value

        elif operator == ConditionOperator.NOT_EQUALS:
            return field_value != compare_value

        elif operator == ConditionOperator.GREATER_THAN:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a > b)

        elif operator == ConditionOperator.LESS_THAN:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a < b)

        elif operator == ConditionOperator.GREATER_THAN_OR_EQUALS:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a >= b)

        elif operator == ConditionOperator.LESS_THAN_OR_EQUALS:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a <= b)

        elif operator == ConditionOperator.CONTAINS:
            if field_value is None:
                return False
            if isinstance(field_value, list):
                return compare_value in field_value
            return str(compare_value) in str(field_value)

        elif operator == ConditionOperator.NOT_CONTAINS:
            if field_value is None:
                return True
            if isinstance(field_value, list):
                return compare_value not in field_value
            return str(compare_value) not in str(field_value)

        elif operator == ConditionOperator.IN:
            if not isinstance(compare_value, list):
                compare_value = [compare_value]
            return field_value in compare_value

        elif operator == ConditionOperator.NOT_IN:
            if not isinstance(compare_value, list):
                compare_value = [compare_value]
            return field_value not in compare_value

        elif operator == ConditionOperator.IS_EMPTY:
            return self._is_empty(field_value)

        elif operator == ConditionOperator.IS_NOT_EMPTY:
            return not self._is_empty(field_value)

        return False

    def _compare_numeric(
        self,
        field_value: Any,
        compare_value: Any,
        comparator
    ) -> bool:
        """Compare numeric values; missing values never satisfy a numeric comparison"""
        if field_value is None or compare_value is None:
            return False
        try:
            return comparator(float(field_value), float(compare_value))
        except (ValueError, TypeError):
            return False
