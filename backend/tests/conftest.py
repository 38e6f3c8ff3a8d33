import copy

import pytest
from bson import ObjectId

from intake_engine.loader import load_form


def element(element_id, type="short_text", required=False, **extra):
    doc = {"id": element_id, "type": type, "label": element_id.upper(), "required": required}
    doc.update(extra)
    return doc


YES_NO = [{"id": "1", "value": "Yes"}, {"id": "2", "value": "No"}]


def hide_rule(rule_id, source, value, target, visible=False, operator="equals"):
    return {
        "id": rule_id,
        "sourceElementId": source,
        "operator": operator,
        "comparisonValue": value,
        "action": {"type": "set_visibility", "targetElementId": target, "visible": visible},
    }


def jump_rule(rule_id, source, value, target_page, operator="equals"):
    return {
        "id": rule_id,
        "sourceElementId": source,
        "operator": operator,
        "comparisonValue": value,
        "action": {"type": "go_to_page", "targetPageIndex": target_page},
    }


@pytest.fixture
def simple_definition():
    """One page, two required text fields, no conditionals."""
    return {
        "id": "simple",
        "title": "Simple",
        "pages": [{"id": "p1", "title": "Page 1", "elements": [
            element("first_name", "name", required=True),
            element("reason", "paragraph", required=True),
        ]}],
        "conditionals": [],
    }


@pytest.fixture
def conditional_definition():
    """B is required but hidden when A equals "No"."""
    return {
        "id": "conditional",
        "title": "Conditional",
        "pages": [{"id": "p1", "title": "Page 1", "elements": [
            element("a", "multiple_choice", options=YES_NO),
            element("b", "short_text", required=True),
        ]}],
        "conditionals": [hide_rule("hide-b", "a", "No", "b")],
    }


@pytest.fixture
def jump_definition():
    """Three pages; answering "Skip" on page 0 jumps straight to page 2."""
    return {
        "id": "jump",
        "title": "Jump",
        "pages": [
            {"id": "p0", "title": "Start", "elements": [element("a")]},
            {"id": "p1", "title": "Details", "elements": [element("b", required=True)]},
            {"id": "p2", "title": "Contact", "elements": [element("c", "email", required=True)]},
        ],
        "conditionals": [jump_rule("skip-details", "a", "Skip", 2)],
    }


@pytest.fixture
def dynamic_definition():
    """C is required and bound to a custom endpoint."""
    return {
        "id": "dynamic",
        "title": "Dynamic",
        "pages": [{"id": "p1", "title": "Page 1", "elements": [
            element("c", "dropdown", required=True, dynamicData={
                "enabled": True,
                "source": "custom",
                "path": "items",
                "endpoint": "https://lookup.invalid/providers",
                "displayMethod": "dropdown",
            }),
        ]}],
        "conditionals": [],
    }


@pytest.fixture
def load():
    return load_form


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self._docs:
            yield doc


class FakeResult:
    def __init__(self, deleted_count=0):
        self.deleted_count = deleted_count


class FakeCollection:
    """In-memory stand-in for the handful of motor collection calls the routers make."""

    def __init__(self):
        self.docs = []

    @staticmethod
    def _matches(doc, query):
        return all(doc.get(key) == value for key, value in query.items())

    async def find_one(self, query, projection=None):
        for doc in self.docs:
            if self._matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query, projection=None, sort=None):
        docs = [copy.deepcopy(d) for d in self.docs if self._matches(d, query)]
        if sort:
            key, direction = sort[0]
            docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return FakeCursor(docs)

    async def replace_one(self, query, doc, upsert=False):
        for index, existing in enumerate(self.docs):
            if self._matches(existing, query):
                self.docs[index] = copy.deepcopy(doc)
                return FakeResult()
        if upsert:
            self.docs.append(copy.deepcopy(doc))
        return FakeResult()

    async def insert_one(self, doc):
        doc.setdefault("_id", ObjectId())
        self.docs.append(copy.deepcopy(doc))
        return FakeResult()

    async def delete_one(self, query):
        for index, existing in enumerate(self.docs):
            if self._matches(existing, query):
                del self.docs[index]
                return FakeResult(1)
        return FakeResult(0)

    async def delete_many(self, query):
        before = len(self.docs)
        self.docs = [d for d in self.docs if not self._matches(d, query)]
        return FakeResult(before - len(self.docs))
