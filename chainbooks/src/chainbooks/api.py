"""
HTTP API for chainbooks.

A thin FastAPI layer over WalletService. Request bodies and response keys
use camelCase; money and BTC amounts are serialized as decimal strings.
Domain errors are mapped to status codes by `_status_for` and returned as
``{"error": message}``.

Usage:
    from chainbooks.api import create_app

    app = create_app()  # builds the service from settings on startup
    uvicorn.run(app, host="127.0.0.1", port=8400)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from chaincore.bitcoin import quantize_usd
from chaincore.constants import MIN_BTC_AMOUNT
from chaincore.models import NetworkType
from chaincore.settings import ChainbooksSettings, get_settings
from chainbooks import __version__
from chainbooks.errors import (
    ChainbooksError,
    ClassificationError,
    DuplicateWallet,
    ExchangeRateUnavailable,
    IndexerError,
    InsufficientLots,
    InvalidAddress,
    InvalidKeyFormat,
    InvalidLotEdit,
    LotLocked,
    NotADisposal,
    NotFound,
    NothingToExport,
    RateLimited,
    RequestTimedOut,
    ServiceUnavailable,
    WalletArchived,
)
from chainbooks.export import ExportFormat, export_filename
from chainbooks.ledger import CostBasisResult
from chainbooks.rates import utc_today
from chainbooks.service import WalletService
from chainbooks.store import FetchStats, PurchaseLot, StoredTransaction, WalletRecord
from chainbooks.wallet.models import TxType

# Most specific class first
_ERROR_STATUS: list[tuple[type[ChainbooksError], int]] = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidKeyFormat, status.HTTP_400_BAD_REQUEST),
    (InvalidAddress, status.HTTP_400_BAD_REQUEST),
    (DuplicateWallet, status.HTTP_400_BAD_REQUEST),
    (NotADisposal, status.HTTP_400_BAD_REQUEST),
    (NothingToExport, status.HTTP_400_BAD_REQUEST),
    (InsufficientLots, status.HTTP_409_CONFLICT),
    (LotLocked, status.HTTP_409_CONFLICT),
    (InvalidLotEdit, status.HTTP_409_CONFLICT),
    (WalletArchived, status.HTTP_409_CONFLICT),
    (RateLimited, status.HTTP_429_TOO_MANY_REQUESTS),
    (ServiceUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RequestTimedOut, status.HTTP_504_GATEWAY_TIMEOUT),
    (IndexerError, status.HTTP_502_BAD_GATEWAY),
    (ExchangeRateUnavailable, status.HTTP_502_BAD_GATEWAY),
    (ClassificationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def _status_for(exc: ChainbooksError) -> int:
    for error_cls, code in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# =============================================================================
# Request schemas
# =============================================================================


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WalletCreate(ApiModel):
    wallet_data: str = Field(min_length=1)
    name: str | None = None
    network: NetworkType | None = None


class TransactionUpdate(ApiModel):
    category: str | None = None
    memo: str | None = None


class PurchaseCreate(ApiModel):
    wallet_id: int
    amount_btc: Decimal = Field(ge=MIN_BTC_AMOUNT)
    cost_basis_usd: Decimal = Field(gt=0)
    purchase_date: date
    source: str | None = None

    @field_validator("purchase_date")
    @classmethod
    def _not_in_future(cls, value: date) -> date:
        if value > utc_today():
            raise ValueError("Purchase date cannot be in the future")
        return value


class PurchaseUpdate(ApiModel):
    amount_btc: Decimal | None = Field(default=None, ge=MIN_BTC_AMOUNT)
    cost_basis_usd: Decimal | None = Field(default=None, ge=0)
    purchase_date: date | None = None
    source: str | None = None


# =============================================================================
# Response helpers
# =============================================================================


def _camelize(value: Any) -> Any:
    if isinstance(value, dict):
        return {to_camel(str(k)): _camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_camelize(v) for v in value]
    return value


def _json(model: BaseModel, **extra: Any) -> dict[str, Any]:
    data = model.model_dump(mode="json")
    data.update(extra)
    return _camelize(data)


def wallet_json(wallet: WalletRecord) -> dict[str, Any]:
    return _json(wallet)


def transaction_json(tx: StoredTransaction) -> dict[str, Any]:
    return _json(tx, amount_btc=str(tx.amount_btc), fee_btc=str(tx.fee_btc))


def lot_json(lot: PurchaseLot) -> dict[str, Any]:
    return _json(lot, state=lot.state.value, price_per_btc=str(quantize_usd(lot.price_per_btc)))


def cost_basis_json(result: CostBasisResult) -> dict[str, Any]:
    return _json(result)


def fetch_message(stats: FetchStats) -> str:
    message = "Transactions fetched."
    if stats.added:
        message += f" Added {stats.added} new transaction(s)."
    if stats.skipped:
        message += f" {stats.skipped} duplicate transaction(s) skipped."
    if stats.lots_created:
        message += f" Created {stats.lots_created} purchase lot(s)."
    return message


def _parse_id_list(raw: str) -> list[int]:
    try:
        ids = [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        ids = []
    if not ids:
        raise RequestValidationError(
            [{"msg": "transactionIds must be comma-separated numbers", "loc": ["query"]}]
        )
    return ids


# =============================================================================
# Application
# =============================================================================


def get_service(request: Request) -> WalletService:
    return request.app.state.service


ServiceDep = Annotated[WalletService, Depends(get_service)]


def create_app(
    service: WalletService | None = None,
    settings: ChainbooksSettings | None = None,
) -> FastAPI:
    """
    Build the API application.

    When no service is passed, one is created from settings on startup.
    The service is closed on shutdown either way.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.service is None:
            app.state.service = WalletService.from_settings(settings or get_settings())
        logger.info("chainbooks API started")
        try:
            yield
        finally:
            logger.info("Shutting down chainbooks API...")
            await app.state.service.close()

    app = FastAPI(
        title="chainbooks",
        description="Bitcoin wallet accounting: imports, valuation and FIFO cost basis",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    @app.exception_handler(ChainbooksError)
    async def chainbooks_error_handler(request: Request, exc: ChainbooksError) -> JSONResponse:
        code = _status_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.debug(f"{request.method} {request.url.path} -> {code}: {exc}")
        return JSONResponse(status_code=code, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        messages = [str(err.get("msg", err)) for err in exc.errors()]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST, content={"error": "; ".join(messages)}
        )

    # -------------------------------------------------------------------------
    # Wallets
    # -------------------------------------------------------------------------

    @app.get("/wallets")
    async def list_wallets(
        service: ServiceDep,
        include_archived: Annotated[bool, Query(alias="includeArchived")] = False,
    ) -> list[dict[str, Any]]:
        return [wallet_json(w) for w in service.list_wallets(include_archived)]

    @app.post("/wallets", status_code=status.HTTP_201_CREATED)
    async def create_wallet(body: WalletCreate, service: ServiceDep) -> dict[str, Any]:
        wallet = service.add_wallet(body.wallet_data, name=body.name, network=body.network)
        return wallet_json(wallet)

    @app.patch("/wallets/{wallet_id}/archive")
    async def archive_wallet(wallet_id: int, service: ServiceDep) -> dict[str, Any]:
        wallet, changed = service.archive_wallet(wallet_id)
        message = (
            "Wallet archived. All transactions are preserved."
            if changed
            else "Wallet is already archived"
        )
        return {"success": True, "message": message, "wallet": wallet_json(wallet)}

    @app.post("/wallets/{wallet_id}/fetch-transactions")
    async def fetch_transactions(wallet_id: int, service: ServiceDep) -> dict[str, Any]:
        # The scan keeps running if the client disconnects
        stats = await asyncio.shield(service.start_fetch(wallet_id))
        return {
            "success": True,
            "stats": _camelize(stats.model_dump()),
            "message": fetch_message(stats),
        }

    @app.get("/wallets/{wallet_id}/scan")
    async def scan_report(wallet_id: int, service: ServiceDep) -> dict[str, Any]:
        wallet = service.get_wallet(wallet_id)
        report = wallet.last_scan
        return {"walletId": wallet.id, "scan": _json(report) if report is not None else None}

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @app.get("/transactions")
    async def list_transactions(
        service: ServiceDep,
        wallet_id: Annotated[int | None, Query(alias="walletId")] = None,
        tx_type: Annotated[TxType | None, Query(alias="type")] = None,
        start_date: Annotated[date | None, Query(alias="startDate")] = None,
        end_date: Annotated[date | None, Query(alias="endDate")] = None,
    ) -> list[dict[str, Any]]:
        txs = service.list_transactions(wallet_id, tx_type, start_date, end_date)
        return [transaction_json(tx) for tx in txs]

    # Declared before /transactions/{transaction_id} so the path is not taken as an id
    @app.get("/transactions/cost-basis")
    async def batch_cost_basis(
        service: ServiceDep,
        transaction_ids: Annotated[str, Query(alias="transactionIds")],
    ) -> dict[str, Any]:
        results = await service.cost_basis_batch(_parse_id_list(transaction_ids))
        return {
            "success": True,
            "count": len(results),
            "transactions": [cost_basis_json(r) for r in results],
        }

    @app.patch("/transactions/{transaction_id}")
    async def update_transaction(
        transaction_id: int, body: TransactionUpdate, service: ServiceDep
    ) -> dict[str, Any]:
        tx = service.update_transaction(transaction_id, category=body.category, memo=body.memo)
        return transaction_json(tx)

    @app.get("/transactions/{transaction_id}/cost-basis")
    async def transaction_cost_basis(transaction_id: int, service: ServiceDep) -> dict[str, Any]:
        tx = service.get_transaction(transaction_id)
        if tx.tx_type != TxType.SENT:
            return {
                "transactionId": tx.id,
                "txType": tx.tx_type.value,
                "message": "Cost basis only applies to sent transactions",
                "costBasisUsd": "0.00",
                "gainLossUsd": "0.00",
                "lots": [],
            }
        return cost_basis_json(await service.cost_basis(transaction_id))

    # -------------------------------------------------------------------------
    # Purchase lots
    # -------------------------------------------------------------------------

    @app.get("/purchases")
    async def list_purchases(
        service: ServiceDep,
        wallet_id: Annotated[int | None, Query(alias="walletId")] = None,
    ) -> list[dict[str, Any]]:
        return [lot_json(lot) for lot in service.list_purchases(wallet_id)]

    @app.post("/purchases", status_code=status.HTTP_201_CREATED)
    async def create_purchase(body: PurchaseCreate, service: ServiceDep) -> dict[str, Any]:
        lot = service.add_purchase(
            body.wallet_id, body.amount_btc, body.cost_basis_usd, body.purchase_date, body.source
        )
        return lot_json(lot)

    @app.patch("/purchases/{lot_id}")
    async def update_purchase(
        lot_id: int, body: PurchaseUpdate, service: ServiceDep
    ) -> dict[str, Any]:
        result = await service.update_purchase(lot_id, **body.model_dump(exclude_unset=True))
        response = lot_json(result.lot)
        if result.warning:
            response["warning"] = result.warning
        return response

    @app.delete("/purchases/{lot_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_purchase(lot_id: int, service: ServiceDep, force: bool = False) -> Response:
        await service.delete_purchase(lot_id, force=force)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    @app.get("/export/transactions")
    async def export_transactions(
        service: ServiceDep,
        start_date: Annotated[date | None, Query(alias="startDate")] = None,
        end_date: Annotated[date | None, Query(alias="endDate")] = None,
        wallet_id: Annotated[int | None, Query(alias="walletId")] = None,
        export_format: Annotated[ExportFormat, Query(alias="format")] = ExportFormat.STANDARD,
    ) -> Response:
        text = await service.export(export_format, wallet_id, start_date, end_date)
        return Response(
            content=text,
            media_type="text/csv",
            headers={
                "Content-Disposition": (
                    f'attachment; filename="{export_filename(export_format)}"'
                )
            },
        )

    return app
