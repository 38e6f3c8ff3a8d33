import logging
from datetime import datetime

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, HTTPException
from pymongo.errors import PyMongoError

from intake_engine.database import submissions_collection, convert_objectid_to_str
from intake_engine.errors import ErrorKind
from intake_engine.routers.forms import get_loaded_form
from intake_engine.rules import page_path, resolve_visibility
from intake_engine.schemas import ValuesIn
from intake_engine.validation import build_submission_payload, validate_form

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/forms", tags=["submissions"])


@router.post("/{form_id}/submit")
async def submit_form(form_id: str, submission: ValuesIn):
    """
    Store a response. The answers are re-checked here: every page on the
    respondent's path must validate, and only visible answers on that path
    are stored.
    """
    loaded = await get_loaded_form(form_id)
    definition = loaded.definition

    hidden = resolve_visibility(definition, loaded.rules, submission.values)
    path = page_path(definition, loaded.rules, submission.values)
    result = validate_form(definition, loaded.rules, hidden, submission.values)
    if not result.valid:
        raise HTTPException(status_code=422, detail=result.model_dump(mode="json"))

    doc = {
        "formId": form_id,
        "values": build_submission_payload(definition, hidden, submission.values, path),
        "submittedAt": datetime.utcnow(),
    }
    try:
        await submissions_collection.insert_one(doc)
    except PyMongoError as e:
        logger.error(f"Could not store submission for form '{form_id}': {e}")
        raise HTTPException(
            status_code=502,
            detail={"kind": ErrorKind.SUBMIT_FAILED.value, "message": "Submission could not be stored"},
        )

    doc = convert_objectid_to_str(doc)
    doc["id"] = doc.pop("_id", None)
    return doc


@router.get("/{form_id}/submissions")
async def list_submissions(form_id: str):
    """Return submissions for a form (most recent first)."""
    submissions = []
    cursor = submissions_collection.find({"formId": form_id}, sort=[("submittedAt", -1)])
    async for doc in cursor:
        doc = convert_objectid_to_str(doc)
        submissions.append({
            "id": doc.get("_id"),
            "formId": doc.get("formId"),
            "values": doc.get("values", {}),
            "submittedAt": doc.get("submittedAt"),
        })
    return submissions


@router.delete("/{form_id}/submissions/{submission_id}")
async def delete_submission(form_id: str, submission_id: str):
    """Delete a single submission by id."""
    try:
        oid = ObjectId(submission_id)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid submission id")

    result = await submissions_collection.delete_one({"_id": oid, "formId": form_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Submission not found")
    return {"status": "ok", "deletedId": submission_id}
