"""
Asset registration and router authority endpoints.
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from htlc_router.errors import UnsupportedAsset

log = logging.getLogger(__name__)

router = APIRouter()


class AssetRegisterRequest(BaseModel):
    asset_id: str = Field(..., alias="assetId")
    primary_router_id: str = Field(..., alias="primaryRouterId")
    backup_router_ids: List[str] = Field(default_factory=list, alias="backupRouterIds")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class AuthorityValidateRequest(BaseModel):
    asset_id: str = Field(..., alias="assetId")
    router_id: str = Field(..., alias="routerId")

    model_config = {"populate_by_name": True}


class AuthorityTransferRequest(BaseModel):
    asset_id: str = Field(..., alias="assetId")
    new_primary_router_id: str = Field(..., alias="newPrimaryRouterId")

    model_config = {"populate_by_name": True}


def _service(request: Request):
    return request.app.state.service


@router.post("/api/assets")
async def register_asset(req: AssetRegisterRequest, request: Request):
    authority = _service(request).authority.register_asset(
        req.asset_id, req.primary_router_id, req.backup_router_ids, req.metadata
    )
    return authority.to_dict()


@router.get("/api/assets")
async def list_assets(request: Request):
    assets = [a.to_dict() for a in _service(request).authority.list_assets()]
    return {"assets": assets, "count": len(assets)}


@router.get("/api/assets/{asset_id}")
async def get_asset(asset_id: str, request: Request):
    authority = _service(request).authority.get_asset(asset_id)
    if authority is None:
        raise UnsupportedAsset(f"Asset {asset_id} is not registered", asset_id=asset_id)
    return authority.to_dict()


@router.post("/api/authority/validate")
async def validate_authority(req: AuthorityValidateRequest, request: Request):
    return _service(request).authority.validate_authority(req.asset_id, req.router_id).to_dict()


@router.post("/api/authority/transfer")
async def transfer_authority(req: AuthorityTransferRequest, request: Request):
    """Hand this router's primary authority over an asset to another router."""
    service = _service(request)
    authority = service.authority.transfer_authority(
        req.asset_id, req.new_primary_router_id, service.config.router_id
    )
    return {"success": True, "authority": authority.to_dict()}


@router.get("/api/routers/{router_id}/assets")
async def router_assets(router_id: str, request: Request):
    return _service(request).authority.get_router_assets(router_id)


@router.post("/api/routers/{router_id}/heartbeat")
async def heartbeat(router_id: str, request: Request):
    authority = _service(request).authority
    ts = authority.record_heartbeat(router_id)
    return {"router_id": router_id, "timestamp": ts,
            "available": authority.is_router_available(router_id)}
