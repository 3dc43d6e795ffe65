import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings
from .lib.errors import SignalGateError
from .lib.receipts import ReceiptLedger
from .lib.reputation import ReputationBook
from .lib.storage import MemoryStorage, PostgresStorage
from .lib.x402 import PaymentGate, build_requirement, resource_url
from .routes.receipts import router as receipts_router
from .routes.reputation import router as reputation_router
from .routes.signals import router as signals_router
from .services.ai import HeuristicEngine, HuggingFaceEngine
from .services.facilitator import FacilitatorClient
from .services.issuer import SignalIssuer
from .services.market import MarketContextSource
from .services.pyth import PythPriceSource

logger = logging.getLogger("signalgate")

SERVICE_NAME = "SignalGate Backend"
SIGNALS_RESOURCE = "/api/signals"


def create_app(
    settings: Settings = None,
    *,
    storage=None,
    oracle=None,
    engine=None,
    prices=None,
    market=None,
) -> FastAPI:
    """
    Build the service with every collaborator wired explicitly.

    Anything not passed in is built from settings. Tests pass fakes here.
    """
    settings = settings or Settings.from_env()

    if storage is None:
        if settings.database_url:
            storage = PostgresStorage(settings.database_url, timeout=settings.storage_timeout)
        else:
            storage = MemoryStorage()
    if oracle is None:
        oracle = FacilitatorClient(settings.facilitator_url, timeout=settings.oracle_timeout)
    if engine is None:
        if settings.huggingface_api_key:
            engine = HuggingFaceEngine(
                settings.huggingface_api_key, model=settings.hf_model, timeout=settings.upstream_timeout
            )
        else:
            logger.warning("HUGGINGFACE_API_KEY not set. Using heuristic analysis.")
            engine = HeuristicEngine()
    if prices is None:
        prices = PythPriceSource(settings.pyth_hermes_url, timeout=settings.upstream_timeout)
    if market is None:
        market = MarketContextSource(timeout=settings.upstream_timeout)

    requirement = build_requirement(
        resource=resource_url(settings.public_base_url, SIGNALS_RESOURCE),
        price_micro_units=settings.signal_price,
        asset_address=settings.usdc_mint,
        asset_decimals=settings.asset_decimals,
        network=settings.network,
        pay_to=settings.treasury_address,
        description="Trading signal request",
    )

    ledger = ReceiptLedger(storage)
    reputation = ReputationBook(storage)
    issuer = SignalIssuer(
        gate=PaymentGate(oracle),
        ledger=ledger,
        reputation=reputation,
        engine=engine,
        prices=prices,
        market=market,
        requirement=requirement,
        upstream_timeout=settings.upstream_timeout,
        storage_timeout=settings.storage_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await storage.connect()
        logger.info(f"Network: {settings.network}")
        logger.info(f"Signal price: {settings.signal_price_usdc} USDC")
        logger.info(f"Treasury: {settings.treasury_address or 'NOT SET'}")
        yield
        await storage.close()

    app = FastAPI(title=SERVICE_NAME, version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.reputation = reputation
    app.state.issuer = issuer

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-PAYMENT-RESPONSE"],
    )

    app.include_router(signals_router)
    app.include_router(receipts_router)
    app.include_router(reputation_router)

    @app.exception_handler(SignalGateError)
    async def signalgate_error(request: Request, exc: SignalGateError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message, **exc.extra},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        field = (".".join(str(p) for p in errors[0]["loc"][1:]) if errors else "") or "body"
        return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid {field} parameter"})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    @app.get("/health")
    def health():
        return {
            "success": True,
            "data": {
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "service": SERVICE_NAME,
            },
        }

    return app


def run():
    import uvicorn
    import os

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    uvicorn.run(create_app(), host="0.0.0.0", port=int(os.getenv("PORT", "3001")))


if __name__ == "__main__":
    run()
