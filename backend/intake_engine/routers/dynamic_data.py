from typing import List

from fastapi import APIRouter, Depends, HTTPException

from intake_engine.dynamic_data import DefaultOptionLookup, OptionLookup
from intake_engine.errors import DynamicFetchError
from intake_engine.schemas import DynamicBinding, DynamicOption

router = APIRouter(prefix="/api", tags=["dynamic-data"])


def get_option_lookup() -> OptionLookup:
    return DefaultOptionLookup()


@router.post("/dynamic-data", response_model=List[DynamicOption])
async def fetch_dynamic_options(binding: DynamicBinding, lookup: OptionLookup = Depends(get_option_lookup)):
    """
    Resolve the options for one dynamic binding.
    Expects JSON body: {"enabled": true, "source": "service", "path": "plans"}
    """
    if not binding.enabled:
        raise HTTPException(status_code=400, detail="Dynamic data binding is disabled")

    try:
        return await lookup.fetch(binding)
    except DynamicFetchError as e:
        raise HTTPException(status_code=502, detail=e.to_dict())
