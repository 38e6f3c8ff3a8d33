import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Body, HTTPException, Query

from intake_engine.database import forms_collection, submissions_collection, convert_objectid_to_str
from intake_engine.errors import MalformedDefinitionError
from intake_engine.loader import LoadedForm, definition_to_dict, load_form
from intake_engine.rules import evaluate, is_last_step
from intake_engine.schemas import EvaluateIn, EvaluateOut, ValuesIn
from intake_engine.validation import validate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/forms", tags=["forms"])

STORAGE_FIELDS = ("_id", "createdAt", "updatedAt")


async def get_loaded_form(form_id: str) -> LoadedForm:
    """Fetch a stored definition and load it, or raise 404."""
    doc = await forms_collection.find_one({"_id": form_id})
    if not doc:
        raise HTTPException(status_code=404, detail="Form not found")

    definition = {k: v for k, v in doc.items() if k not in STORAGE_FIELDS}
    try:
        return load_form(definition)
    except MalformedDefinitionError as e:
        # stored before a stricter check, or edited by hand
        logger.error(f"Stored form '{form_id}' no longer loads: {e.message}")
        raise HTTPException(status_code=422, detail=e.to_dict())


@router.get("")
async def list_forms():
    """Get a list of all forms with basic info."""
    items = []
    async for item in forms_collection.find({}, {"_id": 1, "title": 1, "createdAt": 1}):
        item["id"] = item.pop("_id")
        items.append(convert_objectid_to_str(item))
    return items


@router.post("")
async def upsert_form(
    payload: Any = Body(...),
    form_id: Optional[str] = Query(None, description="Form id to use when the definition carries none"),
):
    try:
        loaded = load_form(payload)
    except MalformedDefinitionError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())

    definition = loaded.definition
    if not definition.id:
        if not form_id:
            raise HTTPException(status_code=422, detail="Form definition needs an id")
        definition = definition.model_copy(update={"id": form_id})

    doc = definition_to_dict(definition)
    doc["_id"] = definition.id
    # Only set createdAt if this is a new document
    existing = await forms_collection.find_one({"_id": definition.id})
    now = datetime.utcnow()
    doc["createdAt"] = existing.get("createdAt", now) if existing else now
    doc["updatedAt"] = now

    await forms_collection.replace_one({"_id": definition.id}, doc, upsert=True)
    return {
        "status": "ok",
        "formId": definition.id,
        "diagnostics": [d.to_dict() for d in loaded.diagnostics],
    }


@router.get("/{form_id}")
async def get_form(form_id: str):
    loaded = await get_loaded_form(form_id)
    return definition_to_dict(loaded.definition)


@router.delete("/{form_id}")
async def delete_form(form_id: str):
    """Delete a form and all its submissions."""
    item = await forms_collection.find_one({"_id": form_id})
    if not item:
        raise HTTPException(status_code=404, detail="Form not found")

    await forms_collection.delete_one({"_id": form_id})
    await submissions_collection.delete_many({"formId": form_id})
    return {"status": "ok", "formId": form_id}


@router.post("/{form_id}/evaluate", response_model=EvaluateOut)
async def evaluate_form(form_id: str, body: EvaluateIn):
    """Hidden elements and the next page for a snapshot of answers."""
    loaded = await get_loaded_form(form_id)
    page_count = loaded.definition.page_count
    if not 0 <= body.pageIndex < page_count:
        raise HTTPException(status_code=400, detail=f"pageIndex must be between 0 and {page_count - 1}")

    result = evaluate(loaded.definition, loaded.rules, body.values, body.pageIndex)
    return EvaluateOut(
        hiddenElementIds=sorted(result.hiddenElementIds),
        nextPageIndex=result.nextPageIndex,
        isLastStep=is_last_step(result.nextPageIndex, page_count),
    )


@router.post("/{form_id}/pages/{page_index}/validate")
async def validate_page(form_id: str, page_index: int, body: ValuesIn):
    loaded = await get_loaded_form(form_id)
    if not 0 <= page_index < loaded.definition.page_count:
        raise HTTPException(status_code=404, detail="Page not found")

    hidden = evaluate(loaded.definition, loaded.rules, body.values).hiddenElementIds
    result = validate(loaded.definition.pages[page_index], hidden, body.values)
    return result.model_dump(mode="json")
