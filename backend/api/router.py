"""Primary API router module wiring storage, collaborators and payment endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter

from api.payment_router import build_payment_router
from core import FirebaseClientManager
from core.config import AppSettings
from models.repositories import PaymentStore
from repositories.firestore_payment_store import FirestorePaymentStore
from repositories.memory_payment_store import InMemoryPaymentStore
from services import (
    EvidenceStore,
    LocalEvidenceStore,
    PaymentSetupService,
    WalletService,
    build_wallet_service,
)


logger = logging.getLogger(__name__)


def build_payment_store(settings: AppSettings) -> PaymentStore:
    """Use Firestore when enabled and reachable, else the in-process store."""
    if settings.firebase_enabled:
        try:
            firebase_manager = FirebaseClientManager(
                project_id=settings.firebase_project_id,
                credentials_path=settings.firebase_credentials_path,
            )
            return FirestorePaymentStore(
                firebase_manager=firebase_manager,
                collection_prefix=settings.firebase_collection_prefix,
            )
        except Exception:
            logger.exception("Failed to initialize Firebase dependencies. Falling back to in-memory store.")
    else:
        logger.info("Firebase integration disabled by firebase.enabled=false")
    return InMemoryPaymentStore()


def build_payment_service(
    settings: AppSettings,
    store: Optional[PaymentStore] = None,
    wallet_service: Optional[WalletService] = None,
    evidence_store: Optional[EvidenceStore] = None,
) -> PaymentSetupService:
    """Assemble the payment service; any collaborator can be supplied by the caller."""
    return PaymentSetupService(
        settings=settings,
        store=store or build_payment_store(settings),
        wallet_service=wallet_service or build_wallet_service(settings),
        evidence_store=evidence_store
        or LocalEvidenceStore(
            directory=settings.evidence_directory,
            public_base_url=settings.evidence_public_base_url,
        ),
    )


def build_router(settings: AppSettings, service: PaymentSetupService) -> APIRouter:
    """Build and return the top-level API router.

    Args:
        settings: Application settings payload.
        service: Payment service shared with background tasks.

    Returns:
        APIRouter: Fully configured router with all endpoints.
    """
    router = APIRouter()
    router.include_router(build_payment_router(service))

    @router.get("/", summary="Root endpoint")
    def read_root() -> dict:
        """Return a basic message confirming service availability."""
        return {"message": "{0} is running".format(settings.app_name)}

    @router.get("/health", summary="Health check")
    def health_check() -> dict:
        """Return service health status for probes and monitors."""
        return {"status": "ok"}

    @router.get("/config/manual-payment", summary="Manual payment requirements")
    def manual_payment_config() -> dict:
        """Return which cash payment fields the tenant requires."""
        return {
            "require_payer_name": True,
            "require_payer_phone": settings.require_payer_phone,
            "require_transaction_reference": settings.require_transaction_reference,
            "require_payment_evidence": settings.require_payment_evidence,
            "currency": settings.currency,
        }

    return router
