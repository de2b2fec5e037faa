"""
Dual confirmation endpoints.
"""

import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from htlc_router.core import ConfirmationStatus

log = logging.getLogger(__name__)

router = APIRouter()


class ConfirmationRecordRequest(BaseModel):
    transfer_id: str = Field(..., alias="transferId")
    router_id: str = Field(..., alias="routerId")
    status: ConfirmationStatus
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class ConfirmationRollbackRequest(BaseModel):
    reason: str


def _ledger(request: Request):
    return request.app.state.service.confirmations


@router.post("/api/confirmations")
async def record_confirmation(req: ConfirmationRecordRequest, request: Request):
    ledger = _ledger(request)
    record = ledger.record(req.transfer_id, req.router_id, req.status, req.metadata)
    return {
        "confirmation": record.to_dict(),
        "dual": ledger.reconcile(req.transfer_id).to_dict(),
    }


# Declared before /{transfer_id} so "report" is not taken as an id
@router.get("/api/confirmations/report")
async def confirmation_report(request: Request,
                              start: Optional[float] = Query(None),
                              end: Optional[float] = Query(None)):
    end = end if end is not None else time.time()
    start = start if start is not None else end - 86400
    return _ledger(request).generate_report(start, end)


@router.get("/api/confirmations/{transfer_id}")
async def get_dual_confirmation(transfer_id: str, request: Request):
    return _ledger(request).reconcile(transfer_id).to_dict()


@router.post("/api/confirmations/{confirmation_id}/rollback")
async def rollback_confirmation(confirmation_id: str, req: ConfirmationRollbackRequest,
                                request: Request):
    return _ledger(request).rollback(confirmation_id, req.reason).to_dict()
