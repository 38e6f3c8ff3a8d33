from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from intake_engine.errors import ErrorKind


class ElementType(str, Enum):
    SHORT_TEXT = "short_text"
    PARAGRAPH = "paragraph"
    NUMBER = "number"
    MULTIPLE_CHOICE = "multiple_choice"  # single choice
    CHECKBOXES = "checkboxes"  # multi choice
    DROPDOWN = "dropdown"
    DATE = "date"
    TIME = "time"
    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"
    ADDRESS = "address"


CHOICE_TYPES = frozenset({ElementType.MULTIPLE_CHOICE, ElementType.CHECKBOXES, ElementType.DROPDOWN})


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


DynamicSource = Literal["service", "user", "custom"]
DisplayMethod = Literal["dropdown", "radio", "autocomplete"]


class Option(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    value: str


class DynamicOption(BaseModel):
    """A selectable choice produced by a dynamic data source."""

    model_config = ConfigDict(frozen=True)

    value: str
    label: str


class DynamicBinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    source: DynamicSource = "service"
    path: str = ""
    endpoint: Optional[str] = None
    displayMethod: DisplayMethod = "dropdown"

    @model_validator(mode="after")
    def _custom_needs_endpoint(self):
        if self.enabled and self.source == "custom" and not self.endpoint:
            raise ValueError("dynamicData with source 'custom' requires an endpoint")
        return self


class Element(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: ElementType
    label: str
    placeholder: Optional[str] = None
    helperText: Optional[str] = None
    required: bool = False
    options: Optional[List[Option]] = None
    dynamicData: Optional[DynamicBinding] = None
    width: Optional[str] = None
    size: Optional[str] = None

    @property
    def is_dynamic(self) -> bool:
        return self.dynamicData is not None and self.dynamicData.enabled

    @model_validator(mode="after")
    def _static_choices_not_empty(self):
        if self.type in CHOICE_TYPES and not self.is_dynamic and not self.options:
            raise ValueError(f"element '{self.id}' of type '{self.type.value}' needs at least one option")
        return self


class Page(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    elements: List[Element] = Field(default_factory=list)


class GoToPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["go_to_page"] = "go_to_page"
    targetPageIndex: int


class SetVisibility(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["set_visibility"] = "set_visibility"
    targetElementId: str
    visible: bool


RuleAction = Annotated[Union[GoToPage, SetVisibility], Field(discriminator="type")]


class ConditionalRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    sourceElementId: str
    operator: Operator
    comparisonValue: Any = None
    action: RuleAction


class FormDefinition(BaseModel):
    """
    A multi-page form as authored.

    Element ids are global to the form: rules address elements without
    naming the page they live on.
    """

    model_config = ConfigDict(frozen=True)

    id: str = ""
    title: str = ""
    description: str = ""
    pages: List[Page]
    conditionals: List[ConditionalRule] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_structure(self):
        if not self.pages:
            raise ValueError("form must have at least one page")

        page_ids = [page.id for page in self.pages]
        duplicates = sorted({pid for pid in page_ids if page_ids.count(pid) > 1})
        if duplicates:
            raise ValueError(f"duplicate page ids: {', '.join(duplicates)}")

        element_ids = [element.id for element in self.elements()]
        duplicates = sorted({eid for eid in element_ids if element_ids.count(eid) > 1})
        if duplicates:
            raise ValueError(f"duplicate element ids: {', '.join(duplicates)}")
        return self

    @property
    def page_count(self) -> int:
        return len(self.pages)

    def elements(self) -> List[Element]:
        """All elements across all pages, in page order."""
        return [element for page in self.pages for element in page.elements]

    def element_ids(self) -> FrozenSet[str]:
        return frozenset(element.id for element in self.elements())

    def get_element(self, element_id: str) -> Optional[Element]:
        for element in self.elements():
            if element.id == element_id:
                return element
        return None


class EvaluationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    hiddenElementIds: FrozenSet[str] = frozenset()
    nextPageIndex: Optional[int] = None


class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    fieldErrors: Dict[str, ErrorKind] = Field(default_factory=dict)


# ---------- API bodies ----------


class EvaluateIn(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)
    pageIndex: int = 0


class EvaluateOut(BaseModel):
    hiddenElementIds: List[str]
    nextPageIndex: Optional[int]
    isLastStep: bool


class ValuesIn(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)

