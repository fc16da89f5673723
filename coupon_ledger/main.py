import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coupon_ledger.core.config import settings
from coupon_ledger.core.exceptions import StorageUnavailableError
from coupon_ledger.routers import coupon_usages, coupons

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "Coupons", "description": "Manage coupons and validate or apply them at checkout."},
    {"name": "Coupon Usages", "description": "Redemption history, statistics and reconciliation."},
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Coupon discount engine and redemption ledger. "
        "Validates codes against purchases, records each redemption exactly once, "
        "and keeps usage counters consistent with the ledger."
    ),
    openapi_tags=OPENAPI_TAGS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count", "X-Rejection-Reason"],
)


@app.exception_handler(StorageUnavailableError)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError) -> JSONResponse:
    logger.warning("Storage unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Coupon store temporarily unavailable"},
    )


app.include_router(coupons.router, prefix="/v1/coupons", tags=["Coupons"])
app.include_router(coupon_usages.router, prefix="/v1/coupon_usages", tags=["Coupon Usages"])


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "status": "running",
    }
