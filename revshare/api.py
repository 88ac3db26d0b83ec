from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .config import Settings, configure_logging, get_settings
from .exceptions import (
    DispatchFailureNotFoundError, NormalizationError, ProviderUnavailableError, RevShareError,
    TransientStoreError, UnknownTransactionError,
)
from .models import (
    AffiliateBalance, CommissionEntry, DispatchFailure, IngestResult,
    PartnerBalance, PartnerSplitEntry, Transaction, WebhookAck,
)
from .service import RevShareService


class AppleNotificationRequest(BaseModel):
    signedPayload: str


class ReconcileResponse(BaseModel):
    transaction_id: str
    reconciled: bool


def get_service(request: Request) -> RevShareService:
    return request.app.state.service


def _unavailable(e: RevShareError) -> HTTPException:
    # The provider redelivers on 5xx, and redelivery is deduplicated.
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


def create_app(service: Optional[RevShareService] = None, settings: Optional[Settings] = None,
               root_path: str = "") -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.service.close()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Idempotent ingestion of billing events with affiliate commissions and partner revenue shares",
        version=settings.APP_VERSION,
        lifespan=lifespan,
        root_path=root_path,
    )
    app.state.service = service or RevShareService.from_settings(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "revshare-ledger"}

    # -- ingestion ---------------------------------------------------------

    @app.post("/transactions", response_model=IngestResult, status_code=status.HTTP_202_ACCEPTED,
              tags=["Ingestion"])
    def ingest_transaction(transaction: Transaction, background_tasks: BackgroundTasks,
                           service: RevShareService = Depends(get_service)) -> IngestResult:
        try:
            return service.ingest(transaction, background_tasks.add_task)
        except TransientStoreError as e:
            raise _unavailable(e)

    @app.post("/webhooks/stripe", response_model=WebhookAck, tags=["Webhooks"])
    def stripe_webhook(background_tasks: BackgroundTasks, payload: dict = Body(...),
                       service: RevShareService = Depends(get_service)) -> WebhookAck:
        try:
            return service.ingest_stripe_event(payload, background_tasks.add_task)
        except NormalizationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except (TransientStoreError, ProviderUnavailableError) as e:
            raise _unavailable(e)

    @app.post("/webhooks/revenuecat", response_model=WebhookAck, tags=["Webhooks"])
    def revenuecat_webhook(background_tasks: BackgroundTasks, payload: dict = Body(...),
                           service: RevShareService = Depends(get_service)) -> WebhookAck:
        try:
            return service.ingest_revenuecat_event(payload, background_tasks.add_task)
        except NormalizationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except TransientStoreError as e:
            raise _unavailable(e)

    @app.post("/webhooks/apple", response_model=WebhookAck, tags=["Webhooks"])
    def apple_webhook(request: AppleNotificationRequest, background_tasks: BackgroundTasks,
                      service: RevShareService = Depends(get_service)) -> WebhookAck:
        try:
            return service.ingest_apple_notification(request.signedPayload, background_tasks.add_task)
        except NormalizationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except TransientStoreError as e:
            raise _unavailable(e)

    # -- ledger ------------------------------------------------------------

    @app.get("/transactions/{transaction_id}", response_model=Transaction, tags=["Ledger"])
    def get_transaction(transaction_id: str,
                        service: RevShareService = Depends(get_service)) -> Transaction:
        try:
            return service.get_transaction(transaction_id)
        except UnknownTransactionError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                                detail=f"Transaction {transaction_id} not found")

    @app.get("/transactions/{transaction_id}/commissions", response_model=list[CommissionEntry],
             tags=["Ledger"])
    def get_transaction_commissions(transaction_id: str,
                                    service: RevShareService = Depends(get_service)):
        return service.list_commissions(transaction_id=transaction_id)

    @app.get("/transactions/{transaction_id}/partner-splits", response_model=list[PartnerSplitEntry],
             tags=["Ledger"])
    def get_transaction_partner_splits(transaction_id: str,
                                       service: RevShareService = Depends(get_service)):
        return service.list_partner_splits(transaction_id=transaction_id)

    @app.get("/affiliates/{affiliate_id}/balance", response_model=AffiliateBalance, tags=["Balances"])
    def get_affiliate_balance(affiliate_id: str,
                              service: RevShareService = Depends(get_service)) -> AffiliateBalance:
        return service.get_affiliate_balance(affiliate_id)

    @app.get("/partners/{partner_id}/balance", response_model=PartnerBalance, tags=["Balances"])
    def get_partner_balance(partner_id: str,
                            service: RevShareService = Depends(get_service)) -> PartnerBalance:
        return service.get_partner_balance(partner_id)

    # -- reconciliation ----------------------------------------------------

    @app.get("/dispatch/failures", response_model=list[DispatchFailure], tags=["Reconciliation"])
    def list_dispatch_failures(service: RevShareService = Depends(get_service)):
        return service.dispatch_failures()

    @app.post("/dispatch/failures/{transaction_id}/reconcile", response_model=ReconcileResponse,
              tags=["Reconciliation"])
    def reconcile(transaction_id: str,
                  service: RevShareService = Depends(get_service)) -> ReconcileResponse:
        try:
            service.reconcile(transaction_id)
        except (DispatchFailureNotFoundError, UnknownTransactionError) as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except TransientStoreError as e:
            raise _unavailable(e)
        except RevShareError as e:
            # The cause that parked the unit is still there; the record is kept.
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        return ReconcileResponse(transaction_id=transaction_id, reconciled=True)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
