from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from quota.auth import get_current_user
from quota.plan_limits import PLAN_TABLE_VERSION, plan_catalog
from quota.quota_service import QuotaService
from quota.records import DEFAULT_CATEGORY, QUESTION_MAX_LENGTH
from .base import error_response, success_response


router = APIRouter(prefix="/assistant", tags=["AI 助手配额"])


class ConsumeRequest(BaseModel):
    category: str = Field(default=DEFAULT_CATEGORY, max_length=120)
    artifact_size: int = Field(default=0, ge=0)
    question: str = Field(default="", max_length=QUESTION_MAX_LENGTH * 8)
    session_id: str = Field(default="", max_length=120)


def get_quota_service(request: Request) -> QuotaService:
    service = getattr(request.app.state, "quota_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response(code=50302, message="配额服务未初始化"),
        )
    return service


@router.get("/usage", summary="获取今日提问用量")
async def usage_detail(
    current_user: dict = Depends(get_current_user),
    service: QuotaService = Depends(get_quota_service),
):
    record = await run_in_threadpool(service.get_usage, current_user["user_id"], current_user["plan"])
    return success_response(record.to_dict())


@router.get("/usage/stats", summary="获取提问额度概览")
async def usage_stats(
    current_user: dict = Depends(get_current_user),
    service: QuotaService = Depends(get_quota_service),
):
    stats = await run_in_threadpool(service.get_usage_stats, current_user["user_id"], current_user["plan"])
    return success_response(stats.to_dict())


@router.get("/usage/check", summary="检查是否还能提问")
async def usage_check(
    current_user: dict = Depends(get_current_user),
    service: QuotaService = Depends(get_quota_service),
):
    allowed = await run_in_threadpool(service.can_consume, current_user["user_id"], current_user["plan"])
    return success_response({"allowed": bool(allowed)})


@router.post("/usage/consume", summary="记录一次提问")
async def usage_consume(
    payload: ConsumeRequest,
    current_user: dict = Depends(get_current_user),
    service: QuotaService = Depends(get_quota_service),
):
    result = await run_in_threadpool(
        service.record_consumption,
        current_user["user_id"],
        current_user["plan"],
        payload.category,
        payload.artifact_size,
        payload.question,
        payload.session_id,
    )
    if result.quota_exceeded:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=error_response(code=42901, message="今日提问次数已用完，请升级套餐或明日再试", data=result.to_dict()),
        )
    if result.accounting_failed:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response(code=50301, message="用量记录失败，请稍后重试", data=result.to_dict()),
        )
    return success_response(result.to_dict())


@router.get("/usage/recent", summary="获取最近提问记录")
async def usage_recent(
    limit: int = Query(10, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    service: QuotaService = Depends(get_quota_service),
):
    entries = await run_in_threadpool(service.get_recent_questions, current_user["user_id"], limit)
    return success_response([x.to_dict() for x in entries])


@router.get("/usage/analytics", summary="获取提问用量统计")
async def usage_analytics(
    days: int = Query(7, ge=1, le=90),
    current_user: dict = Depends(get_current_user),
    service: QuotaService = Depends(get_quota_service),
):
    summary = await run_in_threadpool(service.summarize_usage, current_user["user_id"], days)
    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response(code=50303, message="用量统计暂不可用"),
        )
    return success_response(summary)


@router.get("/plans", summary="获取套餐提问额度")
async def plans(current_user: dict = Depends(get_current_user)):
    return success_response({"version": PLAN_TABLE_VERSION, "plans": plan_catalog()})
