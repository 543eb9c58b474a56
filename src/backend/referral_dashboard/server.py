from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, validator

from .config import load_dashboard_config
from .ingestion import normalize_events
from .models import (
    CommissionRule,
    DashboardFilters,
    ReferralCodeSource,
    UserEventSource,
    serialize,
    serialize_union_schema,
)
from .repository import DataSourceError, ReferralDataRepository, build_repository_from_env
from .service import ReferralDashboardService


def _log_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


config = load_dashboard_config()
logging.basicConfig(level=_log_level(config.log_level))
logger = logging.getLogger(__name__)

app = FastAPI(title="Referral Dashboard API", version="0.1.0")
repository: Optional[ReferralDataRepository] = build_repository_from_env(config)


class CommissionRulePayload(BaseModel):
    event: str
    rate: float = Field(ge=0)
    currency: str = "USD"
    display_name: Optional[str] = None


class ReferralCodePayload(BaseModel):
    id: str
    code: str
    created_at: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    quota: Optional[int] = None
    referrals_count: int = 0
    commission_rules: List[CommissionRulePayload] = Field(default_factory=list)


class UserPayload(BaseModel):
    user_id: Optional[str] = None
    referral_code: Optional[str] = None
    referral_created_at: Optional[datetime] = None
    events: List[Any] = Field(default_factory=list)


class DashboardRequest(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    referral_codes: List[str] = Field(default_factory=list)
    search: str = ""
    sort_key: Optional[str] = None
    sort_direction: str = "desc"
    codes: Optional[List[ReferralCodePayload]] = None
    users: Optional[List[UserPayload]] = None

    @validator("end_date")
    def _validate_range(cls, end_date: Optional[date], values: Dict[str, Any]) -> Optional[date]:
        start_date = values.get("start_date")
        if start_date and end_date and end_date < start_date:
            raise ValueError("end_date must not be before start_date")
        return end_date

    @validator("sort_direction")
    def _validate_direction(cls, direction: str) -> str:
        if direction not in {"asc", "desc"}:
            raise ValueError("sort_direction must be 'asc' or 'desc'")
        return direction


class DashboardResponse(BaseModel):
    data: Dict[str, Any]
    source: str


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/dashboard", response_model=DashboardResponse)
async def dashboard_endpoint(request: DashboardRequest) -> DashboardResponse:
    service, source = await _build_service(request)
    try:
        result = service.build(_to_filters(request))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return DashboardResponse(data=result.as_dict(), source=source)


@app.post("/referral-codes/{code}", response_model=DashboardResponse)
async def code_detail_endpoint(code: str, request: DashboardRequest) -> DashboardResponse:
    service, source = await _build_service(request)
    try:
        detail = service.code_detail(code, _to_filters(request))
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown referral code: {code}") from exc
    data = serialize(detail)
    data["unionSchema"] = serialize_union_schema(service.union_schema)
    return DashboardResponse(data=data, source=source)


def _to_filters(request: DashboardRequest) -> DashboardFilters:
    return DashboardFilters(
        start_date=request.start_date,
        end_date=request.end_date,
        referral_codes=tuple(request.referral_codes),
        search=request.search,
        sort_key=request.sort_key,
        sort_direction=request.sort_direction,
    )


async def _build_service(request: DashboardRequest) -> Tuple[ReferralDashboardService, str]:
    codes, users, source = await _load_snapshot(request)
    return ReferralDashboardService(codes=codes, users=users, config=config), source


async def _load_snapshot(
    request: DashboardRequest,
) -> Tuple[Sequence[ReferralCodeSource], Sequence[UserEventSource], str]:
    if repository is not None:
        try:
            codes, users = await asyncio.gather(
                asyncio.to_thread(repository.load_codes),
                asyncio.to_thread(repository.load_users),
            )
        except DataSourceError as exc:
            logger.exception("Failed to load referral snapshot")
            raise HTTPException(status_code=502, detail="Referral data is temporarily unavailable; retry shortly.") from exc
        return codes, users, "database"

    if request.codes is None or request.users is None:
        raise HTTPException(
            status_code=500,
            detail=(
                "REFERRAL_DASHBOARD_DATABASE_URL is not configured; "
                "supply codes+users in the request body for ad-hoc queries."
            ),
        )

    return (
        tuple(_convert_code_payload(payload) for payload in request.codes),
        tuple(_convert_user_payload(payload) for payload in request.users),
        "inline",
    )


def _convert_code_payload(payload: ReferralCodePayload) -> ReferralCodeSource:
    return ReferralCodeSource(
        id=payload.id,
        code=payload.code,
        created_at=payload.created_at,
        start_date=payload.start_date,
        end_date=payload.end_date,
        quota=payload.quota,
        referrals_count=payload.referrals_count,
        commission_rules=tuple(
            CommissionRule(
                event=rule.event,
                rate=rule.rate,
                currency=rule.currency,
                display_name=rule.display_name,
            )
            for rule in payload.commission_rules
        ),
    )


def _convert_user_payload(payload: UserPayload) -> UserEventSource:
    return UserEventSource(
        user_id=payload.user_id,
        referral_code=payload.referral_code,
        referral_created_at=payload.referral_created_at,
        events=normalize_events(payload.events, user_id=payload.user_id),
    )
