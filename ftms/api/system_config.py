"""Shortage receivable defaults (share split, installment plan, due-date offset)."""

from fastapi import APIRouter, Depends

from ftms.api.deps import get_store
from ftms.repository import RevenueStore
from ftms.schemas import SystemConfigResponse, SystemConfigUpdate
from ftms.services import revenue_service

router = APIRouter()


@router.get("", response_model=SystemConfigResponse)
async def get_system_config(store: RevenueStore = Depends(get_store)):
    config = await revenue_service.get_system_config(store)
    return SystemConfigResponse.model_validate(config)


@router.put("", response_model=SystemConfigResponse)
async def update_system_config(
    data: SystemConfigUpdate,
    store: RevenueStore = Depends(get_store),
):
    config = await revenue_service.update_system_config(store, data)
    return SystemConfigResponse.model_validate(config)
