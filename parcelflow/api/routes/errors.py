"""
Errors API Routes

Read-only view of the PFLW error catalog so clients can map codes to
resolutions.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter

from parcelflow.core.errors import (
    ErrorCategory,
    ResourceNotFoundError,
    get_error_catalog,
    get_errors_by_category,
)

router = APIRouter(prefix="/errors")


@router.get("")
async def list_errors(category: Optional[ErrorCategory] = None):
    if category is not None:
        errors = get_errors_by_category(category)
    else:
        errors = list(get_error_catalog().values())
    errors.sort(key=lambda e: e["code"])
    return {"errors": errors, "total": len(errors)}


@router.get("/{code}")
async def get_error(code: str):
    definition = get_error_catalog().get(code.upper())
    if definition is None:
        raise ResourceNotFoundError("PFLW-2008", code=code)
    return definition
