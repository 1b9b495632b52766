from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ...core.errors import OverrideNotFoundError
from ...schemas.api import OverrideEditRequest
from ...schemas.override import Override, OverrideKey, TargetFormat
from ...services.override_store import OverrideStore
from ..deps import get_override_store

router = APIRouter()


@router.get("/{measure_id}", response_model=List[Override])
async def list_overrides(measure_id: str, store: OverrideStore = Depends(get_override_store)):
    """All overrides recorded for a measure, in key order."""
    return sorted(store.snapshot(measure_id), key=lambda o: o.key.as_string())


@router.put("", response_model=Override)
async def record_edit(request: OverrideEditRequest, store: OverrideStore = Depends(get_override_store)):
    """Record a manual edit; repeated edits to the same component append notes."""
    key = OverrideKey(
        measure_id=request.measure_id,
        component_id=request.component_id,
        target_format=request.target_format,
    )
    return store.record_edit(
        key,
        request.generated_snippet,
        request.patched_snippet,
        comment=request.comment,
        author=request.author,
        change_type=request.change_type,
    )


@router.delete("/{measure_id}/{component_id}/{target_format}", response_model=Override)
async def revert(
    measure_id: str,
    component_id: str,
    target_format: TargetFormat,
    store: OverrideStore = Depends(get_override_store),
):
    """Drop an override so the component goes back to generated code."""
    key = OverrideKey(measure_id=measure_id, component_id=component_id, target_format=target_format)
    try:
        return store.revert(key)
    except OverrideNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
