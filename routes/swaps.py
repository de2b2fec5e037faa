"""
Atomic swap endpoints.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from htlc_router.core import SwapAsset, SwapRequest, DEFAULT_TIMEOUT_MINUTES

log = logging.getLogger(__name__)

router = APIRouter()


class SwapAssetModel(BaseModel):
    chain: str
    asset_id: str = Field(..., alias="assetId")
    amount: int = Field(..., gt=0)
    recipient: str

    model_config = {"populate_by_name": True}

    def to_asset(self) -> SwapAsset:
        return SwapAsset(self.chain, self.asset_id, self.amount, self.recipient)


class SwapCreateRequest(BaseModel):
    initiator_id: str = Field(..., alias="initiatorId")
    responder_id: str = Field(..., alias="responderId")
    initiator_asset: SwapAssetModel = Field(..., alias="initiatorAsset")
    responder_asset: SwapAssetModel = Field(..., alias="responderAsset")
    timeout_minutes: float = Field(DEFAULT_TIMEOUT_MINUTES, alias="timeoutMinutes", gt=0)
    auto_rollback: bool = Field(True, alias="autoRollback")
    required_confirmations: Dict[str, int] = Field(default_factory=dict,
                                                   alias="requiredConfirmations")

    model_config = {"populate_by_name": True}

    def to_request(self) -> SwapRequest:
        return SwapRequest(
            initiator_id=self.initiator_id,
            responder_id=self.responder_id,
            initiator_asset=self.initiator_asset.to_asset(),
            responder_asset=self.responder_asset.to_asset(),
            timeout_minutes=self.timeout_minutes,
            required_confirmations=dict(self.required_confirmations),
            auto_rollback=self.auto_rollback,
        )


class SwapCompleteRequest(BaseModel):
    swap_id: str = Field(..., alias="swapId")
    completion_ref: Optional[str] = Field(None, alias="completionRef")
    secret: Optional[str] = None

    model_config = {"populate_by_name": True}


class SwapReasonRequest(BaseModel):
    reason: Optional[str] = None


def _coordinator(request: Request):
    return request.app.state.service.coordinator


@router.post("/api/swaps")
async def create_swap(req: SwapCreateRequest, request: Request):
    """Validate authority and start an atomic swap."""
    return await _coordinator(request).execute_atomic_swap(req.to_request())


@router.get("/api/swaps")
async def list_swaps(request: Request, status: Optional[str] = Query(None)):
    swaps = _coordinator(request).list_swaps(status)
    return {"swaps": swaps, "count": len(swaps)}


@router.post("/api/swaps/complete")
async def complete_swap(req: SwapCompleteRequest, request: Request):
    """Reveal the secret and claim both legs. Returns the updated status."""
    coordinator = _coordinator(request)
    result = await coordinator.complete_atomic_swap(req.swap_id, req.completion_ref, req.secret)
    status = coordinator.get_atomic_swap_status(req.swap_id)
    status["result"] = result
    return status


@router.get("/api/swaps/{swap_id}")
async def get_swap(swap_id: str, request: Request):
    return _coordinator(request).get_atomic_swap_status(swap_id)


@router.post("/api/swaps/{swap_id}/rollback")
async def rollback_swap(swap_id: str, request: Request, req: Optional[SwapReasonRequest] = None):
    reason = (req.reason if req else None) or "Operator rollback"
    return await _coordinator(request).rollback_atomic_swap(swap_id, reason)


@router.post("/api/swaps/{swap_id}/cancel")
async def cancel_swap(swap_id: str, request: Request, req: Optional[SwapReasonRequest] = None):
    reason = (req.reason if req else None) or "Cancelled by caller"
    return await _coordinator(request).cancel_atomic_swap(swap_id, reason)
