"""
Loading, normalizing and verifying form definitions.

Accepted inputs (string or already-decoded JSON):
    - canonical   {"pages": [...], "conditionals": [...]}
    - legacy      [element, element, ...]  (one synthetic page, no rules)
    - wrapped     {"structure": <any of the above>, "title"/"name": ...}

Conditionals may use either the canonical shape
    {"id", "sourceElementId", "operator", "comparisonValue", "action": {...}}
or the flat shape written by the authoring UI
    {"elementId", "operator", "value", "thenShowElementId", "showElement", "thenGoToPage"}.

Structural problems raise MalformedDefinitionError. Rules pointing at
elements or pages that do not exist are dropped with a DANGLING_REFERENCE
diagnostic; the rest of the form stays usable.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple, Union

from pydantic import ValidationError

from intake_engine.errors import Diagnostic, ErrorKind, MalformedDefinitionError
from intake_engine.schemas import ConditionalRule, FormDefinition, GoToPage, SetVisibility

logger = logging.getLogger(__name__)

LEGACY_PAGE_ID = "page1"
LEGACY_PAGE_TITLE = "Page 1"


@dataclass(frozen=True)
class LoadedForm:
    """A verified definition plus the rules that survived reference checks."""

    definition: FormDefinition
    rules: Tuple[ConditionalRule, ...]
    diagnostics: Tuple[Diagnostic, ...] = field(default_factory=tuple)


def _decode(raw: Union[str, bytes, Dict[str, Any], List[Any]]) -> Any:
    if isinstance(raw, (str, bytes)):
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedDefinitionError(f"Invalid JSON in form definition: {e}")
    return raw


def _normalize_conditional(raw: Any, index: int, diagnostics: List[Diagnostic]) -> List[Dict[str, Any]]:
    if not isinstance(raw, dict):
        raise MalformedDefinitionError(f"Conditional #{index} must be an object")

    if "sourceElementId" in raw or "elementId" not in raw:
        return [raw]

    # Flat authoring-UI shape: one record may carry a visibility and a page action
    rule_id = str(raw.get("id") or f"rule-{index}")
    base = {
        "sourceElementId": raw["elementId"],
        "operator": raw.get("operator"),
        "comparisonValue": raw.get("value"),
    }
    rules = []
    if raw.get("thenShowElementId"):
        rules.append({
            **base,
            "id": rule_id,
            "action": {
                "type": "set_visibility",
                "targetElementId": raw["thenShowElementId"],
                "visible": bool(raw.get("showElement", False)),
            },
        })
    if raw.get("thenGoToPage") is not None:
        rules.append({
            **base,
            "id": f"{rule_id}-page" if rules else rule_id,
            "action": {"type": "go_to_page", "targetPageIndex": raw["thenGoToPage"]},
        })

    if not rules:
        message = f"Conditional '{rule_id}' has no action and was skipped"
        logger.warning(message)
        diagnostics.append(Diagnostic(ErrorKind.DANGLING_REFERENCE, message, rule_id=rule_id))
    return rules


def normalize_structure(data: Any, diagnostics: List[Diagnostic]) -> Dict[str, Any]:
    """Bring any accepted input shape to the canonical dict shape (not yet validated)."""
    if isinstance(data, list):
        logger.info("Converting legacy element list to a single-page form")
        return {
            "pages": [{"id": LEGACY_PAGE_ID, "title": LEGACY_PAGE_TITLE, "elements": data}],
            "conditionals": [],
        }

    if not isinstance(data, dict):
        raise MalformedDefinitionError("Form definition must be a JSON object or an array of elements")

    if "structure" in data and "pages" not in data:
        inner = normalize_structure(_decode(data["structure"]), diagnostics)
        for key in ("id", "description"):
            if key in data and key not in inner:
                inner[key] = data[key]
        if "title" not in inner and (data.get("title") or data.get("name")):
            inner["title"] = data.get("title") or data.get("name")
        return inner

    if "pages" not in data:
        raise MalformedDefinitionError("Form definition must contain 'pages'")

    conditionals = data.get("conditionals") or []
    if not isinstance(conditionals, list):
        raise MalformedDefinitionError("'conditionals' must be an array")

    normalized = dict(data)
    normalized["conditionals"] = [
        rule
        for index, raw in enumerate(conditionals)
        for rule in _normalize_conditional(raw, index, diagnostics)
    ]
    return normalized


def _validation_summary(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        location = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{location}: {err.get('msg')}" if location else err.get("msg", ""))
    return "; ".join(parts)


def parse_definition(raw: Any, diagnostics: List[Diagnostic] = None) -> FormDefinition:
    """Decode, normalize and validate a definition. Raises MalformedDefinitionError."""
    if diagnostics is None:
        diagnostics = []
    data = normalize_structure(_decode(raw), diagnostics)
    try:
        return FormDefinition.model_validate(data)
    except ValidationError as e:
        message = f"Invalid form definition: {_validation_summary(e)}"
        logger.error(message)
        raise MalformedDefinitionError(message)


def find_dangling_references(definition: FormDefinition) -> Tuple[List[ConditionalRule], List[Diagnostic]]:
    """Split the definition's rules into usable ones and diagnostics for the rest."""
    element_ids = definition.element_ids()
    usable: List[ConditionalRule] = []
    diagnostics: List[Diagnostic] = []

    for rule in definition.conditionals:
        problem = None
        if rule.sourceElementId not in element_ids:
            problem = f"source element '{rule.sourceElementId}' does not exist"
        elif isinstance(rule.action, SetVisibility) and rule.action.targetElementId not in element_ids:
            problem = f"target element '{rule.action.targetElementId}' does not exist"
        elif isinstance(rule.action, GoToPage) and not 0 <= rule.action.targetPageIndex < definition.page_count:
            problem = (
                f"target page {rule.action.targetPageIndex} is outside 0..{definition.page_count - 1}"
            )

        if problem is None:
            usable.append(rule)
            continue

        message = f"Rule '{rule.id}' skipped: {problem}"
        logger.warning(message)
        diagnostics.append(Diagnostic(ErrorKind.DANGLING_REFERENCE, message, rule_id=rule.id))

    return usable, diagnostics


def load_form(raw: Any) -> LoadedForm:
    """Parse a definition and drop rules with dangling references."""
    diagnostics: List[Diagnostic] = []
    definition = parse_definition(raw, diagnostics)
    rules, dangling = find_dangling_references(definition)
    diagnostics.extend(dangling)
    return LoadedForm(definition=definition, rules=tuple(rules), diagnostics=tuple(diagnostics))


def definition_to_dict(definition: FormDefinition) -> Dict[str, Any]:
    return definition.model_dump(mode="json")


def dump_definition(definition: FormDefinition, indent: int = None) -> str:
    """Serialize to the canonical JSON shape; parse_definition reads it back unchanged."""
    return json.dumps(definition_to_dict(definition), indent=indent)
