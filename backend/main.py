"""Application entrypoint for the property payment ledger FastAPI backend."""

import sys
from pathlib import Path
from typing import Optional

# ---------------------------------------------------------------------------
# Ensure the backend package root is importable
# ---------------------------------------------------------------------------
_BACKEND_DIR = Path(__file__).resolve().parent
if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from api.router import build_payment_service, build_router
from core import AppSettings, get_logger, load_settings, setup_logging
from models.repositories import PaymentStore
from services import EvidenceStore, OverdueSweeper, WalletService


setup_logging()
logger = get_logger(__name__)


def create_app(
    settings: Optional[AppSettings] = None,
    store: Optional[PaymentStore] = None,
    wallet_service: Optional[WalletService] = None,
    evidence_store: Optional[EvidenceStore] = None,
) -> FastAPI:
    """Create and configure a FastAPI application instance."""
    settings = settings or load_settings()
    setup_logging(settings.log_level)
    app = FastAPI(title=settings.app_name, debug=settings.debug)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:4200",
            "http://127.0.0.1:4200",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    service = build_payment_service(
        settings,
        store=store,
        wallet_service=wallet_service,
        evidence_store=evidence_store,
    )
    app.state.payment_service = service
    app.include_router(build_router(settings, service))

    # ── Background services ──────────────────────────────────────────────
    sweeper = OverdueSweeper(settings=settings, schedule_engine=service.schedule_engine)
    app.state.overdue_sweeper = sweeper

    @app.on_event("startup")
    async def _startup_background_services() -> None:
        """Start background services on application startup."""
        try:
            await app.state.overdue_sweeper.start()
        except Exception:
            logger.exception("Failed to start background services during startup.")

    @app.on_event("shutdown")
    async def _shutdown_background_services() -> None:
        """Stop background services on application shutdown."""
        try:
            await app.state.overdue_sweeper.stop()
        except Exception:
            logger.exception("Failed to stop background services during shutdown.")

    logger.info("Application initialized: %s", settings.app_name)
    return app


app = create_app()


def run() -> None:
    """Start the ASGI server for local development."""
    settings = load_settings()
    try:
        uvicorn.run("main:app", host=settings.host, port=settings.port, reload=settings.debug)
    except Exception:
        logger.exception("Failed to start uvicorn server.")
        raise


if __name__ == "__main__":
    run()
