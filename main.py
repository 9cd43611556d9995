# main.py
import logging
from dataclasses import dataclass
from datetime import datetime

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from audit import ActivationLogSink, network_info_from_headers
from code_format import CodeType
from db import SessionLocal
from errors import ExhaustedEntropyError, RateLimited, RedeemError, StorageUnavailable
from issuance import IssuanceService
from models import MAX_CODE_LENGTH, MAX_DEVICE_ID_LENGTH, MAX_EMAIL_LENGTH
from rate_limit import MemoryBucketBackend, RateLimiter, SqlBucketBackend
from redemption import RedemptionService
from settings import Settings, settings
from store import RecordStore, StoreSummary


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


setup_logging(settings.log_level)
settings.validate()
log = logging.getLogger(__name__)


@dataclass
class Services:
    store: RecordStore
    issuance: IssuanceService
    redemption: RedemptionService
    admin_token: str | None


def build_services(session_factory, config: Settings) -> Services:
    store = RecordStore(session_factory)
    if config.rate_limit_backend == "sql":
        backend = SqlBucketBackend(session_factory)
    else:
        backend = MemoryBucketBackend()
    limiter = RateLimiter(
        backend,
        threshold=config.rate_limit_threshold,
        window_seconds=config.rate_limit_window_seconds,
    )
    issuance = IssuanceService(store, secret_key=config.master_key, prefix=config.code_prefix)
    redemption = RedemptionService(
        store,
        limiter,
        secret_key=config.master_key,
        prefix=config.code_prefix,
        audit_sink=ActivationLogSink(session_factory, retention_days=config.audit_retention_days),
        grandfather_expired=config.grandfather_expired,
    )
    return Services(store=store, issuance=issuance, redemption=redemption, admin_token=config.admin_token)


_services = build_services(SessionLocal, settings)


def get_services() -> Services:
    return _services


app = FastAPI(title="CarMaster Premium Service", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.resolved_cors_origins(),
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["Content-Type"],
)


def require_admin(services: Services, token: str):
    if not services.admin_token:
        # If you forget to set it, block admin completely
        raise HTTPException(status_code=500, detail="admin_token_not_configured")
    if token != services.admin_token:
        raise HTTPException(status_code=403, detail="forbidden")


# --------------------------------------------------------------------
# Schemas for the app
# --------------------------------------------------------------------

class ValidatePremiumIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field("", max_length=MAX_CODE_LENGTH)
    device_id: str = Field("", alias="deviceId", max_length=MAX_DEVICE_ID_LENGTH)
    email: str | None = Field(None, max_length=MAX_EMAIL_LENGTH)


class ValidatePremiumOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    already_activated: bool = Field(alias="alreadyActivated")
    features: list[str]
    type: CodeType
    activated_at: datetime | None = Field(alias="activatedAt")


class IssueCodesIn(BaseModel):
    count: int = Field(10, ge=1, le=1000)
    type: CodeType = CodeType.CUSTOMER
    notes: str | None = None


class IssueCodesOut(BaseModel):
    type: CodeType
    codes: list[str]


# --------------------------------------------------------------------
# Health check
# --------------------------------------------------------------------

@app.get("/healthz")
def healthz():
    return {"ok": True}


# --------------------------------------------------------------------
# Public: validate / activate a premium code
# --------------------------------------------------------------------

@app.post("/api/validate-premium", response_model=ValidatePremiumOut, response_model_by_alias=True)
def validate_premium(
    body: ValidatePremiumIn,
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    client_host = request.client.host if request.client else None
    try:
        result = services.redemption.redeem(
            body.code,
            body.device_id,
            email=body.email,
            network_info=network_info_from_headers(request.headers, client_host),
        )
    except RateLimited as exc:
        raise HTTPException(status_code=429, detail=exc.detail)
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.detail)
    except RedeemError as exc:
        raise HTTPException(status_code=400, detail=exc.detail)

    if result.activation is not None:
        # Audit write runs after the response has been sent
        background_tasks.add_task(services.redemption.deliver, result.activation)

    return ValidatePremiumOut(
        success=result.success,
        already_activated=result.already_activated,
        features=result.features,
        type=result.type,
        activated_at=result.activated_at,
    )


# --------------------------------------------------------------------
# Admin: issue codes and read the store summary
# --------------------------------------------------------------------

@app.post("/admin/codes", response_model=IssueCodesOut)
def admin_issue_codes(
    body: IssueCodesIn,
    token: str = Query(..., description="admin token"),
    services: Services = Depends(get_services),
):
    require_admin(services, token)
    try:
        codes = services.issuance.issue_batch(body.count, body.type, notes=body.notes)
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.detail)
    except ExhaustedEntropyError:
        log.error("Code space exhausted while issuing %d %s codes", body.count, body.type.value)
        raise HTTPException(status_code=500, detail="exhausted_entropy")
    return IssueCodesOut(type=body.type, codes=codes)


@app.get("/admin/stats", response_model=StoreSummary)
def admin_stats(
    token: str = Query(..., description="admin token"),
    services: Services = Depends(get_services),
):
    require_admin(services, token)
    try:
        return services.store.summary()
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.detail)
