"""
Conditional rule evaluation.

Rules are scanned in array order and the last applicable rule wins, both for
visibility and for the next-page decision. Two rules that disagree about the
same element (or page) are not reported; the later one silently overrides the
earlier one. Whether such conflicts should be rejected at load time is still
an open question, so the order-dependent behavior is kept as-is.

Go-to-page rules are not tied to the page they were authored on: every rule
whose condition holds applies on every page. After a jump to page N, a rule
that still holds sends the respondent to N again from N itself, so
``advance`` stays on that page until the answer changes or ``submit`` is
used.
"""

from __future__ import annotations

from datetime import date, datetime, time
from functools import reduce
from typing import Any, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from intake_engine.schemas import (
    ConditionalRule,
    Element,
    EvaluationResult,
    FormDefinition,
    GoToPage,
    Operator,
    Page,
    SetVisibility,
)


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _to_number(x: Any) -> Optional[float]:
    # allow numeric strings like "12.3"; everything else is not a number
    if _is_number(x):
        return x
    if isinstance(x, str) and x.strip():
        try:
            return float(x)
        except ValueError:
            return None
    return None


def _to_text(x: Any) -> str:
    if x is None:
        return ""
    if isinstance(x, bool):
        return "true" if x else "false"
    if isinstance(x, float) and x.is_integer():
        return str(int(x))
    if isinstance(x, (datetime, date, time)):
        return x.isoformat()
    return str(x)


def _equals(value: Any, expected: Any) -> bool:
    if isinstance(value, (list, tuple)):
        if not isinstance(expected, (list, tuple)):
            return False
        return [_to_text(v) for v in value] == [_to_text(e) for e in expected]
    if _is_number(value) and _is_number(expected):
        return value == expected
    return _to_text(value) == _to_text(expected)


def _contains(value: Any, needle: Any) -> bool:
    needle = _to_text(needle)
    if isinstance(value, (list, tuple)):
        return any(needle in _to_text(item) for item in value)
    return needle in _to_text(value)


def _compare_numbers(value: Any, op: Operator, expected: Any) -> bool:
    left = _to_number(value)
    right = _to_number(expected)
    if left is None or right is None:
        return False
    if op == Operator.GREATER_THAN:
        return left > right
    return left < right


def is_answered(values: Mapping[str, Any], element_id: str) -> bool:
    return values.get(element_id) is not None


def evaluate_condition(rule: ConditionalRule, values: Mapping[str, Any]) -> bool:
    """True when the rule's condition holds. An unanswered source never matches."""
    if not is_answered(values, rule.sourceElementId):
        return False

    value = values[rule.sourceElementId]
    op = rule.operator

    if op == Operator.EQUALS:
        return _equals(value, rule.comparisonValue)
    if op == Operator.NOT_EQUALS:
        return not _equals(value, rule.comparisonValue)
    if op == Operator.CONTAINS:
        return _contains(value, rule.comparisonValue)
    if op in (Operator.GREATER_THAN, Operator.LESS_THAN):
        if isinstance(value, (list, tuple)):
            return False
        return _compare_numbers(value, op, rule.comparisonValue)
    return False


def _apply_visibility(
    hidden: FrozenSet[str],
    rule: ConditionalRule,
    values: Mapping[str, Any],
    known_ids: FrozenSet[str],
) -> FrozenSet[str]:
    action = rule.action
    if not isinstance(action, SetVisibility) or action.targetElementId not in known_ids:
        return hidden
    if not evaluate_condition(rule, values):
        return hidden
    if action.visible:
        return hidden - {action.targetElementId}
    return hidden | {action.targetElementId}


def resolve_visibility(
    definition: FormDefinition,
    rules: Iterable[ConditionalRule],
    values: Mapping[str, Any],
) -> FrozenSet[str]:
    """
    Ids of elements hidden under the current answers.

    Everything starts visible. A matching hide rule adds its target, a matching
    show rule removes it, in rule order, so the last matching rule decides.
    Rules targeting elements outside the definition are ignored.
    """
    known_ids = definition.element_ids()
    return reduce(
        lambda hidden, rule: _apply_visibility(hidden, rule, values, known_ids),
        rules,
        frozenset(),
    )


def next_page(
    current_page_index: int,
    rules: Iterable[ConditionalRule],
    values: Mapping[str, Any],
    page_count: int,
) -> int:
    """
    Index of the page that follows current_page_index.

    Defaults to current_page_index + 1; every matching go-to-page rule
    overwrites the candidate, so the last one wins. The result is not clamped:
    an index >= page_count means the form is complete and should be submitted.
    """
    candidate = current_page_index + 1
    for rule in rules:
        action = rule.action
        if not isinstance(action, GoToPage) or not 0 <= action.targetPageIndex < page_count:
            continue
        if evaluate_condition(rule, values):
            candidate = action.targetPageIndex
    return candidate


def is_last_step(next_page_index: int, page_count: int) -> bool:
    return next_page_index >= page_count


def evaluate(
    definition: FormDefinition,
    rules: Sequence[ConditionalRule],
    values: Mapping[str, Any],
    current_page_index: Optional[int] = None,
) -> EvaluationResult:
    hidden = resolve_visibility(definition, rules, values)
    next_index = None
    if current_page_index is not None:
        next_index = next_page(current_page_index, rules, values, definition.page_count)
    return EvaluationResult(hiddenElementIds=hidden, nextPageIndex=next_index)


def visible_elements(page: Page, hidden: FrozenSet[str]) -> List[Element]:
    return [element for element in page.elements if element.id not in hidden]


def page_path(
    definition: FormDefinition,
    rules: Sequence[ConditionalRule],
    values: Mapping[str, Any],
) -> List[int]:
    """
    Pages a respondent passes through with these answers, starting at page 0.

    Stops when the flow leaves the form or returns to a page already on the
    path (a backward jump would otherwise loop forever).
    """
    path: List[int] = []
    index = 0
    seen = set()
    while 0 <= index < definition.page_count and index not in seen:
        seen.add(index)
        path.append(index)
        index = next_page(index, rules, values, definition.page_count)
    return path
