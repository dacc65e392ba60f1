import logging
import math
import traceback
from typing import List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from starlette import status
from starlette.concurrency import run_in_threadpool

from asset_records import AssetRecordStore, InMemoryAssetRecordStore
from background_removal import BackgroundRemover, create_background_remover
from blob_store import BlobStore, create_blob_store
from compositor import SnapshotCompositor
from config import APIConfig, config
from derivation import DerivationOrchestrator, DerivationService
from errors import MediaError
from image_codec import ImageCodec, PillowCodec
from job_queue import JobQueue
from model_manager import AsyncModelManager
from snapshot_records import InMemorySnapshotStore, RenderLayout, SnapshotStore

# Logging setup
logging.basicConfig(level=config.log_level, format=config.log_format)
logger = logging.getLogger(__name__)

HTTP_STATUS_BY_KIND = {
    "NotFound": status.HTTP_404_NOT_FOUND,
    "InvalidLayout": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "Conflict": status.HTTP_409_CONFLICT,
    "InvalidTransition": status.HTTP_409_CONFLICT,
    "UnsupportedFormat": status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    "CorruptData": status.HTTP_400_BAD_REQUEST,
    "DecodeError": status.HTTP_400_BAD_REQUEST,
    "StoreUnavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "Timeout": status.HTTP_504_GATEWAY_TIMEOUT,
}


# Pydantic models
class SnapshotRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    layout: RenderLayout


class RegenerateRequest(BaseModel):
    layout: Optional[RenderLayout] = None


class BatchRegenerateRequest(BaseModel):
    snapshot_ids: List[str] = Field(..., min_length=1)


def create_app(
    cfg: APIConfig = config,
    blob_store: Optional[BlobStore] = None,
    remover: Optional[BackgroundRemover] = None,
    records: Optional[AssetRecordStore] = None,
    snapshots: Optional[SnapshotStore] = None,
    codec: Optional[ImageCodec] = None,
) -> FastAPI:
    """Wire the derivation pipeline and the compositor behind a FastAPI app."""
    blob_store = blob_store or create_blob_store(cfg)
    remover = remover or create_background_remover(cfg)
    records = records or InMemoryAssetRecordStore()
    snapshots = snapshots or InMemorySnapshotStore()
    codec = codec or PillowCodec(fallback_color=cfg.fallback_color)

    queue = JobQueue()
    orchestrator = DerivationOrchestrator(records, blob_store, codec, remover, cfg)
    derivation = DerivationService(records, blob_store, codec, orchestrator, queue, cfg)
    compositor = SnapshotCompositor(records, snapshots, blob_store, codec, cfg)
    model_manager = AsyncModelManager(remover)

    app = FastAPI(title=cfg.title, description=cfg.description, version=cfg.version)
    app.state.queue = queue
    app.state.derivation = derivation
    app.state.compositor = compositor
    app.state.model_manager = model_manager

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if cfg.blob_backend == "local" and cfg.blob_public_url.startswith("/"):
        app.mount(cfg.blob_public_url, StaticFiles(directory=cfg.blob_local_dir), name="uploads")

    @app.exception_handler(MediaError)
    async def media_error_handler(request: Request, exc: MediaError):
        status_code = HTTP_STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
        if status_code >= 500:
            logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Rejected NaN/Infinity inputs are echoed back and JSON has no literal for them
        detail = jsonable_encoder(exc.errors(), custom_encoder={float: lambda v: v if math.isfinite(v) else str(v)})
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": detail})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Global exception handler: {exc}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc) if str(exc) else "Unknown error occurred",
                "type": type(exc).__name__,
            },
        )

    @app.on_event("startup")
    async def start_background_workers():
        warnings = cfg.validate()
        for warning in warnings:
            logger.warning(f"⚠️ Config: {warning}")
        await queue.start_workers(cfg.num_workers)
        derivation.recover_pending()
        if cfg.model_warmup_on_startup:
            # Startup is not blocked by the model download
            app.state.warmup_task = model_manager.warm_up_in_background()
        logger.info("🚀 Wardrobe Media API started")

    @app.on_event("shutdown")
    async def stop_background_workers():
        await queue.shutdown()
        logger.info("👋 Background workers stopped")

    @app.get("/")
    def api_info():
        return {
            "name": cfg.title,
            "version": cfg.version,
            "status": "running",
            "docs": "/docs",
            "endpoints": [
                "/wardrobe/upload",
                "/wardrobe/{image_id}/status",
                "/wardrobe/{image_id}/retry",
                "/wardrobe",
                "/wardrobe/stats",
                "/snapshots",
                "/snapshots/validate",
                "/snapshots/{snapshot_id}",
                "/snapshots/{snapshot_id}/regenerate",
                "/snapshots/regenerate-batch",
                "/health",
            ],
        }

    @app.get("/health")
    def health_check():
        return {
            "status": "ok",
            "queue": queue.get_status(),
            "model": model_manager.get_status(),
        }

    # ------------------------------------------------------------------
    # Garment derivation
    # ------------------------------------------------------------------

    @app.post("/wardrobe/upload", status_code=status.HTTP_201_CREATED)
    async def upload_garment(file: UploadFile = File(...), owner_id: str = Form(...)):
        """
        Store a garment photograph and start background processing.

        Returns immediately with the image id in `pending` state; poll
        /wardrobe/{image_id}/status for progress.
        """
        if file.content_type not in cfg.allowed_content_types:
            raise HTTPException(status_code=415, detail=f"Unsupported content-type: {file.content_type}")
        image_bytes = await file.read()
        if not image_bytes:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")
        if len(image_bytes) > cfg.max_upload_bytes:
            raise HTTPException(status_code=413, detail=f"File too large. Max {cfg.max_upload_mb}MB")

        logger.info(f"Upload from {owner_id}: {file.filename} ({len(image_bytes)} bytes)")
        # Blob writes block, keep them off the loop the derivation workers share
        record = await run_in_threadpool(derivation.submit, owner_id, image_bytes, file.content_type)
        return {
            "imageId": record.id,
            "originalUrl": record.original_url,
            "processingStatus": record.status.value,
            "message": "Image uploaded successfully. Processing in background.",
        }

    @app.get("/wardrobe/stats")
    def processing_stats(owner_id: Optional[str] = Query(None)):
        return derivation.records.get_processing_stats(owner_id)

    @app.get("/wardrobe")
    def list_garment_images(owner_id: str = Query(..., min_length=1)):
        return {"images": [record.to_status() for record in derivation.records.list_by_owner(owner_id)]}

    @app.get("/wardrobe/{image_id}/status")
    def processing_status(image_id: str, owner_id: Optional[str] = Query(None)):
        return derivation.get_status(image_id, owner_id)

    @app.post("/wardrobe/{image_id}/retry", status_code=status.HTTP_202_ACCEPTED)
    async def retry_processing(image_id: str):
        record = derivation.resubmit(image_id)
        return record.to_status()

    # ------------------------------------------------------------------
    # Outfit snapshots
    # ------------------------------------------------------------------

    @app.post("/snapshots/validate")
    def validate_layout(layout: RenderLayout):
        reasons = compositor.validation_errors(layout)
        return {"valid": not reasons, "reasons": reasons}

    @app.post("/snapshots", status_code=status.HTTP_201_CREATED)
    def generate_snapshot(payload: SnapshotRequest):
        snapshot = compositor.generate_outfit_snapshot(payload.owner_id, payload.layout)
        return snapshot.to_dict()

    @app.post("/snapshots/regenerate-batch")
    def regenerate_snapshots(payload: BatchRegenerateRequest):
        results = compositor.batch_regenerate(payload.snapshot_ids)
        return {
            "results": [
                {
                    "id": item["id"],
                    "snapshot": item["snapshot"].to_dict() if item["snapshot"] else None,
                    "error": item["error"].to_dict() if item["error"] else None,
                }
                for item in results
            ]
        }

    @app.get("/snapshots/{snapshot_id}")
    def get_snapshot(snapshot_id: str):
        return compositor.snapshots.get(snapshot_id).to_dict()

    @app.post("/snapshots/{snapshot_id}/regenerate")
    def regenerate_snapshot(snapshot_id: str, payload: Optional[RegenerateRequest] = None):
        layout = payload.layout if payload else None
        return compositor.regenerate_snapshot(snapshot_id, layout).to_dict()

    @app.post("/snapshots/{snapshot_id}/needs-regeneration")
    def needs_regeneration(snapshot_id: str, layout: RenderLayout):
        return {"needsRegeneration": compositor.needs_regeneration(snapshot_id, layout)}

    @app.delete("/snapshots/{snapshot_id}")
    def delete_snapshot(snapshot_id: str):
        compositor.delete_snapshot(snapshot_id)
        return {"message": "Snapshot deleted successfully", "snapshotId": snapshot_id}

    return app


app = create_app()
