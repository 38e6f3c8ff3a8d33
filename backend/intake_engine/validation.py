from __future__ import annotations

import re
from datetime import date, datetime, time
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence

from intake_engine.errors import ErrorKind
from intake_engine.rules import page_path
from intake_engine.schemas import ConditionalRule, Element, ElementType, FormDefinition, Page, ValidationResult

EMAIL_PATTERN = re.compile(r"^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}$", re.IGNORECASE)
PHONE_PATTERN = re.compile(r"^[0-9+\-\s()]*$")
NUMBER_PATTERN = re.compile(r"^[0-9]*$")


def is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple)) and len(value) == 0)


def _valid_email(value: Any) -> bool:
    return isinstance(value, str) and EMAIL_PATTERN.match(value) is not None


def _valid_phone(value: Any) -> bool:
    return isinstance(value, str) and PHONE_PATTERN.match(value) is not None


def _valid_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and NUMBER_PATTERN.match(value) is not None


def _valid_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str):
        return False
    for parse in (date.fromisoformat, datetime.fromisoformat):
        try:
            parse(value.replace("Z", "+00:00"))
            return True
        except ValueError:
            continue
    return False


def _valid_time(value: Any) -> bool:
    if isinstance(value, time):
        return True
    if not isinstance(value, str):
        return False
    try:
        time.fromisoformat(value)
        return True
    except ValueError:
        return False


# One entry per element type; None means the type has no format rule.
FORMAT_RULES: Dict[ElementType, Optional[Callable[[Any], bool]]] = {
    ElementType.SHORT_TEXT: None,
    ElementType.PARAGRAPH: None,
    ElementType.NUMBER: _valid_number,
    ElementType.MULTIPLE_CHOICE: None,
    ElementType.CHECKBOXES: None,
    ElementType.DROPDOWN: None,
    ElementType.DATE: _valid_date,
    ElementType.TIME: _valid_time,
    ElementType.EMAIL: _valid_email,
    ElementType.PHONE: _valid_phone,
    ElementType.NAME: None,
    ElementType.ADDRESS: None,
}

_uncovered = set(ElementType) - set(FORMAT_RULES)
if _uncovered:
    raise RuntimeError(f"FORMAT_RULES is missing element types: {sorted(t.value for t in _uncovered)}")


def check_element(element: Element, values: Mapping[str, Any]) -> Optional[ErrorKind]:
    value = values.get(element.id)
    if is_empty(value):
        return ErrorKind.REQUIRED if element.required else None
    rule = FORMAT_RULES[element.type]
    if rule is not None and not rule(value):
        return ErrorKind.FORMAT_INVALID
    return None


def validate(page: Page, hidden_element_ids: FrozenSet[str], values: Mapping[str, Any]) -> ValidationResult:
    """
    Validate the visible elements of one page.

    Hidden elements are skipped entirely, required or not: a respondent must
    never be blocked by a field they were not shown.
    """
    field_errors: Dict[str, ErrorKind] = {}
    for element in page.elements:
        if element.id in hidden_element_ids:
            continue
        error = check_element(element, values)
        if error is not None:
            field_errors[element.id] = error
    return ValidationResult(valid=not field_errors, fieldErrors=field_errors)


def validate_form(
    definition: FormDefinition,
    rules: Sequence[ConditionalRule],
    hidden_element_ids: FrozenSet[str],
    values: Mapping[str, Any],
) -> ValidationResult:
    """Validate every page on the respondent's path through the form."""
    field_errors: Dict[str, ErrorKind] = {}
    for index in page_path(definition, rules, values):
        result = validate(definition.pages[index], hidden_element_ids, values)
        field_errors.update(result.fieldErrors)
    return ValidationResult(valid=not field_errors, fieldErrors=field_errors)


def build_submission_payload(
    definition: FormDefinition,
    hidden_element_ids: FrozenSet[str],
    values: Mapping[str, Any],
    page_indexes: Optional[Iterable[int]] = None,
) -> Dict[str, Any]:
    """
    Visible, answered values in definition order.

    Hidden elements are dropped even if answered. When page_indexes is given,
    only elements on those pages are kept, so answers left on a page the
    respondent jumped past are never stored.
    """
    pages = set(range(definition.page_count)) if page_indexes is None else set(page_indexes)
    return {
        element.id: values[element.id]
        for index, page in enumerate(definition.pages)
        if index in pages
        for element in page.elements
        if element.id not in hidden_element_ids and not is_empty(values.get(element.id))
    }
