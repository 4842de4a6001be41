from __future__ import annotations

import asyncio
import hmac
import logging
from typing import Optional

import anyio
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, Security, status
from fastapi.responses import JSONResponse
from fastapi.security.api_key import APIKeyHeader

from StagedUploads.api import schemas
from StagedUploads.core.broker import UploadBroker, build_broker
from StagedUploads.core.config import Settings, get_settings
from StagedUploads.core.errors import UploadError
from StagedUploads.core.logging import configure_logging
from StagedUploads.core.models import GrantConstraints, PromotionResult, UploadGrant

logger = logging.getLogger("StagedUploads.api")

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _grant_out(grant: UploadGrant) -> schemas.GrantOut:
    return schemas.GrantOut(**grant.to_dict())


def _promotion_out(result: PromotionResult) -> schemas.PromotionOut:
    return schemas.PromotionOut(
        permanent_object=schemas.PermanentObjectOut(**result.permanent_object.to_dict()),
        already_promoted=result.already_promoted,
    )


def create_app(settings: Optional[Settings] = None, broker: Optional[UploadBroker] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(title=settings.APP_NAME, version=settings.VERSION)
    app.state.settings = settings
    app.state.broker = broker
    sweeper_stop_event = asyncio.Event()

    # ---- DI Setup ----
    def get_broker(request: Request) -> UploadBroker:
        return request.app.state.broker

    def get_role(api_key: Optional[str] = Security(api_key_header)) -> str:
        role = settings.API_KEYS.get(api_key or "")
        if role is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API Key")
        return role

    def require_admin(role: str = Depends(get_role)) -> str:
        if role != "admin":
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
        return role

    def verify_webhook(authorization: Optional[str] = Header(None)) -> None:
        expected = f"Bearer {settings.WEBHOOK_TOKEN}"
        if not authorization or not hmac.compare_digest(authorization, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")

    # ---- Lifecycle ----
    @app.on_event("startup")
    async def startup() -> None:
        if app.state.broker is None:
            app.state.broker = build_broker(settings)
        if settings.RUN_SWEEPER:
            sweeper_stop_event.clear()
            app.state.sweeper_task = asyncio.create_task(
                app.state.broker.sweeper.run(sweeper_stop_event, settings.SWEEP_INTERVAL_SECONDS)
            )

    @app.on_event("shutdown")
    async def shutdown() -> None:
        sweeper_stop_event.set()
        task = getattr(app.state, "sweeper_task", None)
        if task is not None:
            await task

    # ---- Errors ----
    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
        log_level = logging.WARNING if exc.retryable else logging.INFO
        logger.log(log_level, "%s %s rejected: %s (%s)", request.method, request.url.path, exc.reason, exc.detail)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"reason": "internal_error", "detail": "Internal server error", "retryable": True},
        )

    # ---- API Endpoints ----
    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "service": settings.APP_NAME, "version": settings.VERSION}

    @app.post("/grants", response_model=schemas.GrantIssued, status_code=status.HTTP_201_CREATED)
    def issue_grant(
        body: schemas.GrantRequest,
        role: str = Depends(get_role),
        broker: UploadBroker = Depends(get_broker),
    ) -> schemas.GrantIssued:
        issued = broker.issue_grant(
            owner_id=body.owner_id,
            file_name=body.file_name,
            content_type=body.content_type,
            size_bytes=body.size_bytes,
            constraints=GrantConstraints(role=role),
        )
        return schemas.GrantIssued(
            grant=_grant_out(issued.grant),
            upload=schemas.UploadInstructions(**issued.credential.to_dict()),
        )

    @app.get("/grants/{upload_id}", response_model=schemas.GrantOut)
    def get_grant(
        upload_id: str,
        owner_id: str = Query(..., min_length=1),
        _: str = Depends(get_role),
        broker: UploadBroker = Depends(get_broker),
    ) -> schemas.GrantOut:
        grant = broker.lookup(upload_id, owner_id)
        if grant is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload not found")
        return _grant_out(grant)

    @app.post("/grants/{upload_id}/complete", response_model=schemas.GrantOut)
    def complete_upload(
        upload_id: str,
        body: schemas.ConfirmUploadRequest,
        _: str = Depends(get_role),
        broker: UploadBroker = Depends(get_broker),
    ) -> schemas.GrantOut:
        return _grant_out(broker.confirm_upload(upload_id, body.owner_id))

    @app.put("/staging/{staging_key:path}", response_model=schemas.GrantOut)
    async def relay_upload(
        staging_key: str,
        request: Request,
        token: str = Query(..., min_length=1),
        broker: UploadBroker = Depends(get_broker),
    ) -> schemas.GrantOut:
        if not broker.store.relay_uploads:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Uploads go directly to storage")
        data = await request.body()
        content_type = request.headers.get("content-type", "")
        grant = await anyio.to_thread.run_sync(broker.receive_upload, staging_key, data, content_type, token)
        return _grant_out(grant)

    @app.post("/hooks/storage-events", response_model=schemas.StorageEventsOut)
    def storage_events(
        payload: dict,
        _: None = Depends(verify_webhook),
        broker: UploadBroker = Depends(get_broker),
    ) -> schemas.StorageEventsOut:
        return schemas.StorageEventsOut(completed=broker.handle_storage_events(payload))

    @app.post("/promotions", response_model=schemas.PromotionOut, status_code=status.HTTP_201_CREATED)
    def promote(
        body: schemas.PromotionRequest,
        response: Response,
        _: str = Depends(get_role),
        broker: UploadBroker = Depends(get_broker),
    ) -> schemas.PromotionOut:
        result = broker.promote(body.upload_id, body.owner_id, body.destination, idempotent=body.idempotent)
        if result.already_promoted:
            response.status_code = status.HTTP_200_OK
        return _promotion_out(result)

    @app.post("/admin/sweep", response_model=schemas.SweepOut)
    def sweep(
        _: str = Depends(require_admin),
        broker: UploadBroker = Depends(get_broker),
    ) -> schemas.SweepOut:
        return schemas.SweepOut(**broker.sweep().summary())

    @app.get("/admin/stats")
    def stats(
        _: str = Depends(require_admin),
        broker: UploadBroker = Depends(get_broker),
    ) -> dict:
        return {"grants": broker.ledger.count_by_status()}

    return app


app = create_app()
