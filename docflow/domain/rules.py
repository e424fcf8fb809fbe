"""Rule AST - Typed form of the declarative permission/validation/automation rules

Definitions store rules either as JSON strings or as already-decoded lists/dicts.
They are parsed once, when a definition is loaded, into the tagged models below.
Anything that cannot be parsed becomes a ``MalformedRule`` which always denies.
"""
import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .enums import ConditionOperator


# ============================================================================
# Predicates
# ============================================================================

class ComparisonRule(BaseModel):
    """Compare a context field against a constant"""
    model_config = ConfigDict(extra="forbid", frozen=True)
    
    kind: Literal["comparison"] = "comparison"
    field: str = Field(..., description="Dot path into the evaluation context")
    operator: ConditionOperator
    value: Any = None


class PresenceRule(BaseModel):
    """Require a context field to be present (non-empty), or absent"""
    model_config = ConfigDict(extra="forbid", frozen=True)
    
    kind: Literal["presence"] = "presence"
    field: str
    present: bool = True


class AllOfRule(BaseModel):
    """Boolean AND over child rules"""
    model_config = ConfigDict(extra="forbid", frozen=True)
    
    kind: Literal["and"] = "and"
    rules: List["Rule"] = Field(default_factory=list)


class AnyOfRule(BaseModel):
    """Boolean OR over child rules"""
    model_config = ConfigDict(extra="forbid", frozen=True)
    
    kind: Literal["or"] = "or"
    rules: List["Rule"] = Field(default_factory=list)


class NotRule(BaseModel):
    """Boolean negation"""
    model_config = ConfigDict(extra="forbid", frozen=True)
    
    kind: Literal["not"] = "not"
    rule: "Rule"


class MalformedRule(BaseModel):
    """Placeholder for a rule that failed to parse; evaluates to Denied"""
    model_config = ConfigDict(extra="forbid", frozen=True)
    
    kind: Literal["malformed"] = "malformed"
    reason: str
    source: Optional[str] = None


Rule = Annotated[
    Union[ComparisonRule, PresenceRule, AllOfRule, AnyOfRule, NotRule, MalformedRule],
    Field(discriminator="kind"),
]

AllOfRule.model_rebuild()
AnyOfRule.model_rebuild()
NotRule.model_rebuild()


class PermissionRule(BaseModel):
    """Caller must hold every listed permission"""
    model_config = ConfigDict(extra="forbid", frozen=True)
    
    kind: Literal["permissions"] = "permissions"
    required: List[str] = Field(default_factory=list)


# ============================================================================
# Actions
# ============================================================================

class SetFieldAction(BaseModel):
    """Write a value into instance.state_data"""
    model_config = ConfigDict(extra="forbid", frozen=True)
    
    kind: Literal["set_field"] = "set_field"
    field: str
    value: Any = None


class NotifyAction(BaseModel):
    """Emit a notification intent"""
    model_config = ConfigDict(extra="forbid", frozen=True)
    
    kind: Literal["notify"] = "notify"
    template_key: str
    recipients: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)


class RequestApprovalAction(BaseModel):
    """Open approvals for a gated transition leaving the newly entered state"""
    model_config = ConfigDict(extra="forbid", frozen=True)
    
    kind: Literal["request_approval"] = "request_approval"
    transition_id: str


Action = Annotated[
    Union[SetFieldAction, NotifyAction, RequestApprovalAction, MalformedRule],
    Field(discriminator="kind"),
]


_rule_adapter: TypeAdapter = TypeAdapter(Rule)
_action_list_adapter: TypeAdapter = TypeAdapter(List[Action])


# ============================================================================
# Parsing
# ============================================================================

def _decode(raw: Any) -> Any:
    """Decode JSON-string rule columns; pass decoded values through"""
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        return json.loads(text)
    return raw


def _normalize_predicate(node: Any) -> Any:
    """
    Accept the shorthand shapes rule authors write by hand:
    
    - a list of rules means AND
    - {"logic": "AND"|"OR", "conditions": [...]} condition groups
    - {"field", "operator", "value"} without a kind is a comparison
    - {"field", "required": true} without a kind is a presence check
    """
    if isinstance(node, list):
        return {"kind": "and", "rules": [_normalize_predicate(n) for n in node]}
    if not isinstance(node, dict):
        raise ValueError(f"rule must be an object or list, got {type(node).__name__}")
    
    if "kind" not in node:
        if "conditions" in node:
            logic = str(node.get("logic", "AND")).upper()
            if logic not in ("AND", "OR"):
                raise ValueError(f"unknown logic {logic!r}")
            return {
                "kind": "and" if logic == "AND" else "or",
                "rules": [_normalize_predicate(n) for n in node["conditions"]],
            }
        if "operator" in node:
            normalized = dict(node, kind="comparison")
            normalized["operator"] = str(node["operator"]).upper()
            return normalized
        if "required" in node and "field" in node:
            return {"kind": "presence", "field": node["field"], "present": bool(node["required"])}
        raise ValueError("rule has no kind")
    
    kind = node["kind"]
    if kind in ("and", "or"):
        return dict(node, rules=[_normalize_predicate(n) for n in node.get("rules", [])])
    if kind == "not":
        return dict(node, rule=_normalize_predicate(node.get("rule")))
    if kind == "comparison" and isinstance(node.get("operator"), str):
        return dict(node, operator=node["operator"].upper())
    return node


def parse_rule(raw: Any) -> Optional[Rule]:
    """Parse a validation rule column. ``None`` means no rule."""
    try:
        decoded = _decode(raw)
        if decoded is None or decoded == [] or decoded == {}:
            return None
        return _rule_adapter.validate_python(_normalize_predicate(decoded))
    except (ValueError, TypeError, ValidationError) as e:
        return MalformedRule(reason=f"invalid validation rule: {e}", source=_source(raw))


def parse_permissions(raw: Any) -> Union[PermissionRule, MalformedRule, None]:
    """Parse a required-permissions column (JSON array of strings)"""
    try:
        decoded = _decode(raw)
        if decoded is None or decoded == []:
            return None
        if isinstance(decoded, str):
            decoded = [decoded]
        if not isinstance(decoded, list) or not all(isinstance(p, str) for p in decoded):
            raise ValueError("required permissions must be a list of strings")
        return PermissionRule(required=sorted(set(decoded)))
    except (ValueError, TypeError) as e:
        return MalformedRule(reason=f"invalid permission list: {e}", source=_source(raw))


def parse_actions(raw: Any) -> List[Action]:
    """Parse an automation rule column into an ordered action list"""
    try:
        decoded = _decode(raw)
    except ValueError as e:
        return [MalformedRule(reason=f"invalid automation rules: {e}", source=_source(raw))]
    if decoded is None:
        return []
    if isinstance(decoded, dict):
        decoded = [decoded]
    if not isinstance(decoded, list):
        return [MalformedRule(reason="automation rules must be a list", source=_source(raw))]
    
    actions: List[Action] = []
    for item in decoded:
        try:
            actions.extend(_action_list_adapter.validate_python([item]))
        except ValidationError as e:
            actions.append(MalformedRule(reason=f"invalid action: {e.errors()[0]['msg']}", source=_source(item)))
    return actions


def _source(raw: Any) -> str:
    text = raw if isinstance(raw, str) else json.dumps(raw, default=str)
    return text[:200]
