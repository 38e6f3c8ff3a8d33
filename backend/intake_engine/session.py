"""
Form session state machine.

    EDITING(i) --advance--> VALIDATING(i) --invalid--> EDITING(i) + field errors
                                          --valid----> RESOLVING --next < pageCount--> EDITING(next)
                                                                 --next >= pageCount-> SUBMITTING
    EDITING --submit--> VALIDATING(visited pages) --valid--> SUBMITTING
    SUBMITTING --ok--> SUBMITTED (terminal)
               --error--> FAILED --set_value / advance--> EDITING(i)  (values kept, resubmit allowed)

All engine state lives here; the evaluators themselves are pure functions and
the evaluation is recomputed from scratch after every value change.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from intake_engine import rules as engine_rules
from intake_engine import validation
from intake_engine.dynamic_data import DynamicDataResolver
from intake_engine.errors import Diagnostic, ErrorKind, SubmitFailedError
from intake_engine.loader import LoadedForm
from intake_engine.schemas import DynamicOption, Element, EvaluationResult, FormDefinition, Page

logger = logging.getLogger(__name__)

Submitter = Callable[[Dict[str, Any]], Awaitable[Any]]


class SessionStatus(str, Enum):
    EDITING = "editing"
    VALIDATING = "validating"
    RESOLVING = "resolving"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED = "failed"


class FormSession:
    def __init__(
        self,
        form: LoadedForm,
        submitter: Optional[Submitter] = None,
        resolver: Optional[DynamicDataResolver] = None,
    ):
        self.form = form
        self.submitter = submitter
        self.resolver = resolver
        self.values: Dict[str, Any] = {}
        self.page_index = 0
        self.status = SessionStatus.EDITING
        self.field_errors: Dict[str, ErrorKind] = {}
        self._diagnostics: List[Diagnostic] = list(form.diagnostics)
        self.history: List[int] = []
        self.submitted_payload: Optional[Dict[str, Any]] = None
        self.submission_result: Any = None
        self.last_error: Optional[SubmitFailedError] = None
        self._evaluation = self._evaluate()

    # ---------- read-only views ----------

    @property
    def definition(self) -> FormDefinition:
        return self.form.definition

    @property
    def current_page(self) -> Page:
        return self.definition.pages[self.page_index]

    @property
    def evaluation(self) -> EvaluationResult:
        return self._evaluation

    @property
    def diagnostics(self) -> List[Diagnostic]:
        """Load, fetch and submit problems recorded so far."""
        resolver_diagnostics = self.resolver.diagnostics if self.resolver is not None else []
        return self._diagnostics + resolver_diagnostics

    @property
    def hidden_element_ids(self):
        return self._evaluation.hiddenElementIds

    def visible_elements(self) -> List[Element]:
        return engine_rules.visible_elements(self.current_page, self.hidden_element_ids)

    def options_for(self, element: Element) -> List[DynamicOption]:
        if self.resolver is not None:
            return self.resolver.options_for(element)
        if element.is_dynamic:
            return []
        return [DynamicOption(value=option.value, label=option.value) for option in element.options or []]

    def visited_pages(self) -> List[int]:
        return self.history + [self.page_index]

    def payload(self) -> Dict[str, Any]:
        return validation.build_submission_payload(
            self.definition, self.hidden_element_ids, self.values, self.visited_pages()
        )

    # ---------- internals ----------

    def _evaluate(self) -> EvaluationResult:
        return engine_rules.evaluate(self.definition, self.form.rules, dict(self.values), self.page_index)

    def _transition(self, status: SessionStatus) -> None:
        logger.debug(f"Form '{self.definition.id}' page {self.page_index}: {self.status.value} -> {status.value}")
        self.status = status

    def _require_editable(self, action: str) -> None:
        if self.status == SessionStatus.FAILED:
            self._transition(SessionStatus.EDITING)
        if self.status != SessionStatus.EDITING:
            raise RuntimeError(f"Cannot {action} while session is {self.status.value}")

    def _leave_page(self) -> None:
        if self.resolver is not None:
            self.resolver.cancel([element.id for element in self.current_page.elements])

    def _enter_page(self, index: int) -> None:
        self.page_index = index
        self.field_errors = {}
        self._evaluation = self._evaluate()
        if self.resolver is not None:
            self.resolver.start_all(self.current_page.elements)

    # ---------- operations ----------

    async def start(self) -> None:
        """Begin loading dynamic options for the first page."""
        self._enter_page(self.page_index)

    def set_value(self, element_id: str, value: Any) -> EvaluationResult:
        self._require_editable("change values")
        if self.definition.get_element(element_id) is None:
            raise KeyError(f"Unknown element '{element_id}'")
        self.values[element_id] = value
        self.field_errors.pop(element_id, None)
        self._evaluation = self._evaluate()
        return self._evaluation

    def clear_value(self, element_id: str) -> EvaluationResult:
        self._require_editable("change values")
        self.values.pop(element_id, None)
        self.field_errors.pop(element_id, None)
        self._evaluation = self._evaluate()
        return self._evaluation

    async def advance(self) -> SessionStatus:
        """Validate the current page, then move to the next page or submit."""
        self._require_editable("advance")

        self._transition(SessionStatus.VALIDATING)
        result = validation.validate(self.current_page, self.hidden_element_ids, self.values)
        if not result.valid:
            self.field_errors = dict(result.fieldErrors)
            self._transition(SessionStatus.EDITING)
            return self.status
        self.field_errors = {}

        self._transition(SessionStatus.RESOLVING)
        next_index = engine_rules.next_page(
            self.page_index, self.form.rules, self.values, self.definition.page_count
        )
        if engine_rules.is_last_step(next_index, self.definition.page_count):
            return await self._submit()

        self._leave_page()
        self.history.append(self.page_index)
        self._enter_page(next_index)
        self._transition(SessionStatus.EDITING)
        return self.status

    async def go_back(self) -> int:
        """Return to the page that led here (honoring jumps)."""
        self._require_editable("go back")
        if self.history:
            previous = self.history.pop()
        elif self.page_index > 0:
            previous = self.page_index - 1
        else:
            return self.page_index
        self._leave_page()
        self._enter_page(previous)
        return self.page_index

    async def submit(self) -> SessionStatus:
        """
        Submit without waiting for the flow to run off the last page.

        Every visited page is validated first; on errors the session stays on
        the current page and field_errors holds them all.
        """
        self._require_editable("submit")

        self._transition(SessionStatus.VALIDATING)
        field_errors: Dict[str, ErrorKind] = {}
        for index in self.visited_pages():
            result = validation.validate(self.definition.pages[index], self.hidden_element_ids, self.values)
            field_errors.update(result.fieldErrors)
        self.field_errors = field_errors
        if field_errors:
            self._transition(SessionStatus.EDITING)
            return self.status
        return await self._submit()

    async def _submit(self) -> SessionStatus:
        self._transition(SessionStatus.SUBMITTING)
        payload = self.payload()
        try:
            if self.submitter is not None:
                self.submission_result = await self.submitter(payload)
        except Exception as e:
            self.last_error = SubmitFailedError(f"Submission of form '{self.definition.id}' failed: {e}", cause=e)
            logger.error(self.last_error.message)
            self._diagnostics.append(Diagnostic(ErrorKind.SUBMIT_FAILED, self.last_error.message))
            self._transition(SessionStatus.FAILED)
            return self.status

        self.last_error = None
        self.submitted_payload = payload
        if self.resolver is not None:
            self.resolver.cancel_all()
        self._transition(SessionStatus.SUBMITTED)
        return self.status

    async def reset(self) -> None:
        """Start a new response to the same form."""
        if self.resolver is not None:
            self.resolver.cancel_all()
        self.values = {}
        self.history = []
        self.submitted_payload = None
        self.submission_result = None
        self.last_error = None
        self.status = SessionStatus.EDITING
        self._enter_page(0)

    def close(self) -> None:
        if self.resolver is not None:
            self.resolver.cancel_all()
