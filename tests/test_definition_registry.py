"""Definition validation, compilation and caching"""
import pytest

from docflow.domain.errors import (
    DefinitionInvalidError, DefinitionNotFoundError, NoDefaultDefinitionError
)
from docflow.domain.models import WorkflowDefinition
from docflow.domain.rules import MalformedRule
from docflow.engine.definition_registry import validate_definition

from .conftest import letter_draft


def build(**overrides) -> WorkflowDefinition:
    return WorkflowDefinition(definition_id="WFD-test", **letter_draft(**overrides))


class TestValidateDefinition:
    def test_letter_definition_is_valid(self):
        assert validate_definition(build()) == []

    def test_requires_exactly_one_initial_state(self):
        draft = letter_draft()
        draft["states"][1]["is_initial"] = True
        errors = validate_definition(WorkflowDefinition(definition_id="WFD-test", **draft))
        assert any("exactly one initial state" in e for e in errors)

    def test_no_states(self):
        assert validate_definition(build(states=[], transitions=[])) == ["definition has no states"]

    def test_duplicate_state_names(self):
        draft = letter_draft()
        draft["states"][1]["name"] = "Draft"
        errors = validate_definition(WorkflowDefinition(definition_id="WFD-test", **draft))
        assert any("duplicate state names" in e for e in errors)

    def test_transition_to_unknown_state(self):
        draft = letter_draft()
        draft["transitions"][0]["to_state_id"] = "nowhere"
        errors = validate_definition(WorkflowDefinition(definition_id="WFD-test", **draft))
        assert any("unknown state nowhere" in e for e in errors)

    def test_transition_out_of_terminal_state(self):
        draft = letter_draft()
        draft["transitions"].append({
            "transition_id": "reopen",
            "name": "Reopen",
            "from_state_id": "approved",
            "to_state_id": "draft",
        })
        errors = validate_definition(WorkflowDefinition(definition_id="WFD-test", **draft))
        assert any("leaves terminal state approved" in e for e in errors)

    def test_unreachable_state(self):
        draft = letter_draft()
        draft["states"].append({"state_id": "archived", "name": "Archived", "is_terminal": True})
        errors = validate_definition(WorkflowDefinition(definition_id="WFD-test", **draft))
        assert errors == ["states unreachable from initial state: archived"]


class TestRegistry:
    def test_get_compiles_and_caches(self, engine, letter_definition):
        compiled = engine.registry.get(letter_definition.definition_id)

        assert compiled.initial_state_id == "draft"
        assert [t.transition_id for t in compiled.outgoing_transitions("review")] == ["approve", "return"]
        assert compiled.find_transition("review", "draft").transition_id == "return"
        assert compiled.transition_permissions["submit"].required == ["letter.submit"]
        assert engine.registry.get(letter_definition.definition_id) is compiled

    def test_reload_drops_cache(self, engine, letter_definition):
        first = engine.registry.get(letter_definition.definition_id)
        engine.registry.reload(letter_definition.definition_id)
        assert engine.registry.get(letter_definition.definition_id) is not first

    def test_unknown_definition(self, engine):
        with pytest.raises(DefinitionNotFoundError):
            engine.registry.get("WFD-missing")

    def test_no_default(self, engine):
        with pytest.raises(NoDefaultDefinitionError):
            engine.registry.get_default("Invoice")

    def test_stored_invalid_definition_is_rejected_on_load(self, engine, db):
        draft = letter_draft()
        draft["states"][0]["is_initial"] = False
        definition = WorkflowDefinition(definition_id="WFD-broken", is_default=True, **draft)
        engine.registry.repo.create_definition(definition)

        with pytest.raises(DefinitionInvalidError) as exc_info:
            engine.registry.get("WFD-broken")
        assert "exactly one initial state" in exc_info.value.details["errors"][0]

    def test_malformed_rules_compile_but_are_reported(self, engine):
        draft = letter_draft()
        draft["transitions"][0]["validation_rules"] = "{oops"
        compiled = engine.registry.compile(WorkflowDefinition(definition_id="WFD-test", **draft))

        assert isinstance(compiled.transition_validation["submit"], MalformedRule)
        assert compiled.malformed_rules() == [
            f"transition submit validation: {compiled.transition_validation['submit'].reason}"
        ]
