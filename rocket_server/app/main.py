from datetime import datetime
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings
from .deps import Services, build_services, get_services, require_caller
from .logging_setup import setup_logging
from .middleware.request_id import RequestIdMiddleware
from .models.dto import (
    AuthResponseDTO,
    DebugLoginBody,
    MigratePurchaseBody,
    MigrateResultDTO,
    OssStsBody,
    OssStsDTO,
    SendSmsBody,
    SmsResultDTO,
    VerifyReceiptBody,
    WeChatLoginBody,
)
from .provider.errors import ProviderError


logger = logging.getLogger(__name__)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProviderError)
    async def handle_provider_error(request: Request, exc: ProviderError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_body())

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Invalid request body", "details": jsonable_encoder(exc.errors())})

    @app.exception_handler(Exception)
    async def handle_generic_error(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _register_routes(app: FastAPI) -> None:
    started_at = datetime.utcnow()

    @app.get("/health")
    def health():
        return Response(status_code=204, headers={"Cache-Control": "no-store"})

    @app.get("/status")
    def status(services: Services = Depends(get_services)):
        now = datetime.utcnow()
        return {
            "status": "ok",
            "version": app.version,
            "time": now.isoformat() + "Z",
            "uptimeSeconds": int((now - started_at).total_seconds()),
            "missingConfig": len(services.settings.missing()),
        }

    # ===== 短信 =====
    @app.post("/send-sms", response_model=SmsResultDTO)
    def send_sms(
        body: SendSmsBody,
        caller: str = Depends(require_caller),
        services: Services = Depends(get_services),
    ):
        try:
            return services.sms.send_verification_code(body.phone, body.templateParam)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    # ===== OSS 临时凭证 =====
    @app.post("/get-oss-sts", response_model=OssStsDTO)
    def get_oss_sts(
        body: Optional[OssStsBody] = None,
        caller: str = Depends(require_caller),
        services: Services = Depends(get_services),
    ):
        body = body or OssStsBody()
        return services.storage.issue_upload_credentials(caller, app_slug=body.appSlug, env=body.env)

    # ===== 登录 =====
    @app.post("/auth-wechat", response_model=AuthResponseDTO, response_model_exclude_none=True)
    def auth_wechat(body: WeChatLoginBody, services: Services = Depends(get_services)):
        try:
            return services.federation.wechat_login(body.code)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    if app.state.services.settings.enable_test_endpoints:
        @app.post("/debug-login", response_model=AuthResponseDTO, response_model_exclude_none=True)
        def debug_login(body: DebugLoginBody, services: Services = Depends(get_services)):
            try:
                return services.federation.debug_login(body.phone)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

    # ===== App Store =====
    @app.post("/verify-ios-receipt")
    def verify_ios_receipt(body: VerifyReceiptBody, services: Services = Depends(get_services)):
        try:
            verification = services.receipts.verify(body.receiptData, body.excludeOldTransactions)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not verification.ok:
            return JSONResponse(
                status_code=400,
                content={
                    "error": f"Apple verification failed status: {verification.status}",
                    "status": verification.status,
                },
            )
        return verification.payload

    @app.post("/migrate-device-purchase", response_model=MigrateResultDTO, response_model_exclude_none=True)
    def migrate_device_purchase(body: MigratePurchaseBody, services: Services = Depends(get_services)):
        try:
            result = services.receipts.reconcile(
                receipt=body.receipt,
                user_id=body.user_id,
                app_slug=body.app_slug,
                device_id=body.device_id,
                platform=body.platform,
                declared_product_id=body.product_id,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if result.created:
            return MigrateResultDTO()
        return MigrateResultDTO(message="Already migrated")


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Application factory: ``uvicorn rocket_server.app.main:create_app --factory``."""
    settings = settings or (services.settings if services else Settings.from_env())
    setup_logging(settings.log_level)
    for name in settings.missing():
        logger.warning("%s is not set", name)

    app = FastAPI(title="Rocket Workshop Backend", version="0.1.0")
    app.state.services = services or build_services(settings)

    # Added before CORS so real preflights never reach it
    @app.middleware("http")
    async def answer_options(request: Request, call_next):
        if request.method == "OPTIONS":
            return PlainTextResponse("ok")
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )
    app.add_middleware(RequestIdMiddleware)

    _register_error_handlers(app)
    _register_routes(app)
    return app
