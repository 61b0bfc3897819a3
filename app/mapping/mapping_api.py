# app/mapping/mapping_api.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.context import ReconciliationContext, get_context
from app.models.product_mapping import MAPPING_STATUSES
from app.security import verify_admin

router = APIRouter(prefix="/api/integration/mapping", tags=["Mapping"])

_REQUIRED_ON_CREATE = (
    "marketplace_product_id",
    "storefront_product_id",
    "storefront_variant_id",
    "storefront_inventory_item_id",
)


class MappingIn(BaseModel):
    marketplace_product_id: Optional[str] = None
    storefront_product_id: Optional[str] = None
    storefront_variant_id: Optional[str] = None
    storefront_inventory_item_id: Optional[str] = None
    product_name: Optional[str] = None
    status: Optional[str] = None


@router.get("")
async def list_mappings(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    ctx: ReconciliationContext = Depends(get_context),
):
    if status and status not in MAPPING_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(MAPPING_STATUSES)}")
    rows = await ctx.mapping_store.list(status=status, limit=limit)
    return {"count": len(rows), "items": [r.to_dict() for r in rows]}


@router.put("/{sku}", dependencies=[Depends(verify_admin)])
async def put_mapping(sku: str, body: MappingIn, ctx: ReconciliationContext = Depends(get_context)):
    """Create or update the mapping for a SKU. New mappings need all four platform ids."""
    fields = body.model_dump(exclude_none=True)
    if await ctx.mapping_store.find_by_sku(sku) is None:
        missing = [f for f in _REQUIRED_ON_CREATE if not fields.get(f)]
        if missing:
            raise HTTPException(status_code=422, detail=f"missing fields for new mapping: {', '.join(missing)}")
    try:
        row = await ctx.mapping_store.upsert(sku, fields)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "mapping": row.to_dict()}
