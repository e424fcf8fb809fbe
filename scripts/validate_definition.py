"""Script to validate a workflow definition

Usage:
    python scripts/validate_definition.py path/to/definition.json
    python scripts/validate_definition.py --id WFD-1a2b3c4d5e6f
"""
import json
import sys
from typing import Any, Dict, List

from pydantic import ValidationError

from docflow.domain.models import WorkflowDefinition
from docflow.engine.definition_registry import CompiledDefinition, validate_definition


def load_from_file(path: str) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def load_from_db(definition_id: str) -> Dict[str, Any]:
    from docflow.repositories.mongo_client import get_collection, DEFINITIONS
    
    doc = get_collection(DEFINITIONS).find_one({"definition_id": definition_id})
    if not doc:
        print(f"❌ Definition {definition_id} not found")
        sys.exit(1)
    doc.pop("_id", None)
    return doc


def check(raw: Dict[str, Any]) -> List[str]:
    """Print an analysis of a definition and return its errors"""
    try:
        definition = WorkflowDefinition.model_validate(
            dict(raw, definition_id=raw.get("definition_id") or "draft")
        )
    except ValidationError as e:
        return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
    
    print(f"✅ Found definition: {definition.name}")
    print(f"   Entity type: {definition.entity_type}")
    print(f"   Version: {definition.version_number}")
    print()
    
    print("=" * 60)
    print("STATES")
    print("=" * 60)
    for state in definition.states:
        markers = []
        if state.is_initial:
            markers.append("⭐ INITIAL")
        if state.is_terminal:
            markers.append("🏁 TERMINAL")
        print(f"   • {state.name} ({state.state_id}) {' '.join(markers)}")
    
    print("\n" + "=" * 60)
    print("TRANSITIONS")
    print("=" * 60)
    for t in definition.transitions:
        gate = f" 👥 {len(t.approvals)} approver spec(s)" if t.requires_approval else ""
        print(f"   • {t.name}: {t.from_state_id} → {t.to_state_id}{gate}")
    
    errors = validate_definition(definition)
    if not errors:
        warnings = CompiledDefinition(definition).malformed_rules()
        if warnings:
            print("\n⚠️ MALFORMED RULES (will deny at runtime):")
            for w in warnings:
                print(f"   • {w}")
    return errors


def main(argv: List[str]) -> int:
    if len(argv) == 2 and not argv[1].startswith("--"):
        raw = load_from_file(argv[1])
    elif len(argv) == 3 and argv[1] == "--id":
        raw = load_from_db(argv[2])
    else:
        print(__doc__)
        return 2
    
    errors = check(raw)
    if errors:
        print("\n❌ ERRORS:")
        for e in errors:
            print(f"   • {e}")
        print("\n❌ DEFINITION HAS ERRORS")
        return 1
    
    print("\n🎉 DEFINITION IS VALID!")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
