import json
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apis.assistant import router as assistant_router
from quota.config import API_BASE, VERSION, cfg
from quota.events import E, log_event
from quota.log import get_logger, trace_ctx
from quota.quota_service import build_quota_service

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """自定义 JSON 响应类，确保中文不被转义"""
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.quota_service = build_quota_service()
    log_event(logger, E.SYSTEM_STARTUP, version=VERSION, backend=cfg.get("quota.store.backend", "sql"))
    try:
        yield
    finally:
        app.state.quota_service.close()


app = FastAPI(
    title="Assistant Quota API",
    description="AI 助手每日提问配额服务",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    default_response_class=UnicodeJSONResponse,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_trace_context(request: Request, call_next):
    with trace_ctx(request.headers.get("X-Request-Id", "")) as tid:
        response = await call_next(request)
        response.headers["X-Trace-Id"] = tid
    response.headers["X-Version"] = VERSION
    response.headers["Server"] = cfg.get("app_name", "AssistantQuota")
    return response


app.include_router(assistant_router, prefix=API_BASE)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "web:app",
        host=str(cfg.get("server.host", "0.0.0.0")),
        port=int(cfg.get("server.port", 8001)),
        reload=False,
    )
