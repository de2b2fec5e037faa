#!/usr/bin/env python3
"""
HTLC Router Server
Atomic swap coordination between independent ledgers.

Endpoints:
  GET  /api/status                         - Health check
  POST /api/swaps                          - Start atomic swap
  GET  /api/swaps                          - List swaps
  GET  /api/swaps/{id}                     - Swap status
  POST /api/swaps/complete                 - Reveal secret, claim both legs
  POST /api/swaps/{id}/rollback            - Operator rollback
  POST /api/swaps/{id}/cancel              - Cancel before any lock confirms

  POST /api/assets                         - Register asset authority
  GET  /api/assets                         - List asset authorities
  GET  /api/assets/{id}                    - Asset authority
  POST /api/authority/validate             - Check router authority
  POST /api/authority/transfer             - Hand over primary authority
  GET  /api/routers/{id}/assets            - Assets a router holds
  POST /api/routers/{id}/heartbeat         - Router heartbeat

  POST /api/confirmations                  - Record a router confirmation
  GET  /api/confirmations/report           - Confirmation report
  GET  /api/confirmations/{transfer_id}    - Dual confirmation view
  POST /api/confirmations/{id}/rollback    - Roll back one confirmation
"""

import os
import time
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from htlc_router import __version__
from htlc_router.errors import RouterError
from htlc_router.service import RouterService
from routes import authority, confirmations, swaps

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)


# =============================================================================
# APP SETUP
# =============================================================================

def create_app(service: Optional[RouterService] = None) -> FastAPI:
    """Build the API. A service is created from config at startup if none is given."""
    app = FastAPI(
        title="HTLC Router",
        description="Atomic swap coordination across independent ledgers",
        version=__version__,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RouterError)
    async def router_error_handler(request: Request, exc: RouterError):
        if exc.http_status >= 500:
            log.error(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.get("/api/status")
    async def get_status(request: Request):
        """Health check."""
        status = request.app.state.service.status()
        status.update({
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
        })
        return status

    app.include_router(swaps.router)
    app.include_router(authority.router)
    app.include_router(confirmations.router)

    @app.on_event("startup")
    async def startup_event():
        """Build the router service and resume persisted swaps."""
        if app.state.service is None:
            app.state.service = RouterService()
        await app.state.service.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Drain in-flight swaps and persist state."""
        if app.state.service is not None:
            await app.state.service.stop()
        log.info("Router stopped")

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting HTLC Router on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
