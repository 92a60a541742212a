import logging
import sys
from typing import Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .errors import (
    AlreadyOwnedError,
    InsufficientBalanceError,
    InvalidReceiptError,
    ItemNotFoundError,
    LedgerServiceError,
    PartialGrantFailure,
    ReceiptConflictError,
    ReceiptNotFoundError,
    StorageFault,
    UnknownProductError,
)
from .models import (
    CatalogResponse,
    CompleteEntitlementsRequest,
    LedgerHistoryResponse,
    PurchaseGrantResult,
    PurchaseRequest,
    SpendRequest,
    SpendResult,
    UnlockedStylesResponse,
    UnlockStyleRequest,
    UserBalance,
)
from .receipts import ReceiptVerifier, TrustingReceiptVerifier
from .service import CreditService

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ItemNotFoundError: status.HTTP_404_NOT_FOUND,
    UnknownProductError: status.HTTP_404_NOT_FOUND,
    ReceiptNotFoundError: status.HTTP_404_NOT_FOUND,
    AlreadyOwnedError: status.HTTP_409_CONFLICT,
    ReceiptConflictError: status.HTTP_409_CONFLICT,
    InsufficientBalanceError: status.HTTP_402_PAYMENT_REQUIRED,
    InvalidReceiptError: status.HTTP_400_BAD_REQUEST,
    PartialGrantFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
    StorageFault: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _http_error(error: LedgerServiceError) -> HTTPException:
    status_code = ERROR_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail=error.to_dict())


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def create_app(
    service: Optional[CreditService] = None,
    verifier: Optional[ReceiptVerifier] = None,
    root_path: str = "",
) -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    credit_service = service or CreditService(settings=settings)
    receipt_verifier = verifier or TrustingReceiptVerifier()

    app = FastAPI(
        title="Style Credits API",
        description="Credit ledger and style unlocks with append-only history and idempotent purchase grants",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.credit_service = credit_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "style-credits"}

    @app.get("/styles", response_model=CatalogResponse, tags=["Styles"])
    def list_styles() -> CatalogResponse:
        return CatalogResponse(styles=credit_service.list_active())

    @app.post("/styles/{style_id}/unlock", response_model=SpendResult, tags=["Styles"])
    def unlock_style(style_id: str, request: UnlockStyleRequest) -> SpendResult:
        try:
            return credit_service.spend_and_unlock(request.user_id, style_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.post("/credits/spend", response_model=SpendResult, tags=["Credits"])
    def spend_credits(request: SpendRequest) -> SpendResult:
        try:
            return credit_service.spend_and_unlock(request.user_id, request.style_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.post("/purchases", response_model=PurchaseGrantResult, tags=["Purchases"])
    def grant_purchase(request: PurchaseRequest) -> PurchaseGrantResult:
        verdict = receipt_verifier.verify(request.receipt_data, request.product_id)
        if not verdict.valid or not verdict.receipt_id:
            logger.warning("Rejected invalid receipt for user %s, product %s", request.user_id, request.product_id)
            raise _http_error(InvalidReceiptError("Invalid receipt"))
        try:
            return credit_service.grant_from_purchase(
                request.user_id, verdict.product_id, verdict.receipt_id,
            )
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.post(
        "/purchases/{receipt_id}/entitlements",
        response_model=PurchaseGrantResult,
        tags=["Purchases"],
    )
    def complete_entitlements(receipt_id: str, request: CompleteEntitlementsRequest) -> PurchaseGrantResult:
        try:
            return credit_service.complete_purchase_entitlements(request.user_id, receipt_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
    def get_user_balance(user_id: str) -> UserBalance:
        return credit_service.get_balance_summary(user_id)

    @app.get("/users/{user_id}/styles", response_model=UnlockedStylesResponse, tags=["Users"])
    def get_user_styles(user_id: str) -> UnlockedStylesResponse:
        return UnlockedStylesResponse(user_id=user_id, style_ids=sorted(credit_service.list_unlocked(user_id)))

    @app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
    def get_user_ledger(user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return credit_service.get_ledger_history(user_id, limit, offset)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
