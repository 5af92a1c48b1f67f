"""FastAPI host process for the price extraction pipeline.

Wires the queue store, extraction client, record store and worker together
at startup and exposes the host lifecycle hooks and user actions (enqueue,
process now, retry, delete) over HTTP. All components are built explicitly in
``build_pipeline`` and live on ``app.state``.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from uuid import UUID

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from auth import StoredTokenProvider
from background import AsyncioBackgroundScheduler
from config import Settings, settings
from drinks import price_stats_by_drink
from extraction_client import ExtractionClient
from models import CamelModel, Contributor, PendingExtraction
from queue_store import ExtractionQueueStore
from record_store import HttpRecordStore, InMemoryRecordStore, RecordStore, RecordStoreError
from retry_policy import ExponentialBackoffRetry, NoAutomaticRetry
from shared_inbox import SharedInbox
from worker import ExtractionWorker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    store: ExtractionQueueStore
    client: ExtractionClient
    record_store: RecordStore
    scheduler: AsyncioBackgroundScheduler
    worker: ExtractionWorker
    shutdown_timeout: float = 30.0

    async def aclose(self) -> None:
        """Let the job in flight finish, then close the clients it uses."""
        self.worker.stop_processing()
        await self.worker.wait_until_idle(self.shutdown_timeout)
        await self.scheduler.aclose(self.shutdown_timeout)
        await self.client.aclose()
        await self.record_store.aclose()


def build_pipeline(config: Settings = settings) -> Pipeline:
    store = ExtractionQueueStore(
        data_dir=config.DATA_DIR,
        shared_dir=config.SHARED_DIR,
        max_retries=config.MAX_RETRIES,
    )
    client = ExtractionClient(base_url=config.EXTRACTION_SERVICE_URL)

    record_store: RecordStore
    if config.RECORD_STORE_URL:
        record_store = HttpRecordStore(base_url=config.RECORD_STORE_URL)
    else:
        logger.info("RECORD_STORE_URL is empty; using in-memory record store")
        record_store = InMemoryRecordStore()

    if config.AUTO_RETRY_ENABLED:
        retry_policy = ExponentialBackoffRetry(
            max_retries=config.MAX_RETRIES,
            initial_delay=config.RETRY_INITIAL_DELAY,
            backoff=config.RETRY_BACKOFF,
            max_delay=config.RETRY_MAX_DELAY,
        )
    else:
        retry_policy = NoAutomaticRetry()

    contributor = None
    if config.CONTRIBUTOR_ID:
        contributor = Contributor(
            user_id=config.CONTRIBUTOR_ID,
            user_name=config.CONTRIBUTOR_NAME or "Unknown",
        )

    scheduler = AsyncioBackgroundScheduler(time_limit=config.BACKGROUND_TIME_LIMIT_SECONDS)
    worker = ExtractionWorker(
        store=store,
        client=client,
        record_store=record_store,
        token_provider=StoredTokenProvider(
            token=config.AUTH_TOKEN or None,
            token_file=config.AUTH_TOKEN_FILE or None,
        ),
        inbox=SharedInbox(config.SHARED_DIR),
        scheduler=scheduler,
        retry_policy=retry_policy,
        contributor=contributor,
        inter_job_delay=config.INTER_JOB_DELAY_SECONDS,
        commit_jpeg_quality=config.COMMIT_JPEG_QUALITY,
        background_task_id=config.BACKGROUND_TASK_ID,
        background_earliest_begin=config.BACKGROUND_EARLIEST_BEGIN_SECONDS,
    )
    worker.register_background_task()

    return Pipeline(
        store=store,
        client=client,
        record_store=record_store,
        scheduler=scheduler,
        worker=worker,
        shutdown_timeout=config.SHUTDOWN_TIMEOUT_SECONDS,
    )


class QueueResponse(CamelModel):
    extractions: list[PendingExtraction]
    pending_count: int
    is_processing: bool
    current_progress: str | None = None


class ActionResponse(BaseModel):
    started: bool


def create_app(pipeline_factory=build_pipeline) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the pipeline, then treat startup as the host becoming active."""
        pipeline = pipeline_factory()
        app.state.pipeline = pipeline
        logger.info(
            "Price pipeline ready: %d extraction(s) pending",
            pipeline.store.get_pending_count(),
        )
        pipeline.worker.app_did_become_active()

        yield

        await pipeline.aclose()

    app = FastAPI(title="Espresso Price Pipeline", version="1.0.0", lifespan=lifespan)

    def _pipeline(request: Request) -> Pipeline:
        return request.app.state.pipeline

    def _queue_response(pipeline: Pipeline) -> QueueResponse:
        return QueueResponse(
            extractions=pipeline.store.extractions,
            pending_count=pipeline.store.get_pending_count(),
            is_processing=pipeline.worker.is_processing,
            current_progress=pipeline.worker.current_progress,
        )

    @app.get("/api/v1/extractions", response_model=QueueResponse)
    async def list_extractions(request: Request):
        """Pending extractions with status, retry count and last error."""
        return _queue_response(_pipeline(request))

    @app.post("/api/v1/extractions", response_model=PendingExtraction, status_code=201)
    async def queue_extraction(
        request: Request,
        file: UploadFile = File(...),
        cafe_id: str = Form(...),
        cafe_name: str = Form(...),
        cafe_address: str = Form(""),
        cafe_latitude: float = Form(...),
        cafe_longitude: float = Form(...),
    ):
        """Queue a menu photo for a cafe and start processing."""
        pipeline = _pipeline(request)
        image_bytes = await file.read()

        if not image_bytes:
            return JSONResponse(
                status_code=400,
                content={"detail": "Empty file uploaded"},
            )

        # Log byte count only, never image content
        logger.info("Queueing extraction: cafe=%s size=%d bytes", cafe_id, len(image_bytes))

        extraction = pipeline.store.queue_extraction(
            cafe_id=cafe_id,
            cafe_name=cafe_name,
            cafe_address=cafe_address,
            cafe_latitude=cafe_latitude,
            cafe_longitude=cafe_longitude,
            image_bytes=image_bytes,
        )
        if extraction is None:
            return JSONResponse(
                status_code=500,
                content={"detail": "Could not store the image"},
            )

        pipeline.worker.start_processing()
        return extraction

    @app.delete("/api/v1/extractions/{extraction_id}", status_code=204)
    async def delete_extraction(extraction_id: UUID, request: Request):
        pipeline = _pipeline(request)
        extraction = pipeline.store.get(extraction_id)
        if extraction is None:
            raise HTTPException(status_code=404, detail="Extraction not found")
        pipeline.store.remove_extraction(extraction)

    @app.post("/api/v1/extractions/{extraction_id}/retry", response_model=QueueResponse)
    async def retry_extraction(extraction_id: UUID, request: Request):
        pipeline = _pipeline(request)
        if pipeline.store.get(extraction_id) is None:
            raise HTTPException(status_code=404, detail="Extraction not found")
        if not pipeline.worker.retry_extraction(extraction_id):
            raise HTTPException(status_code=409, detail="Extraction cannot be retried")
        return _queue_response(pipeline)

    @app.post("/api/v1/process", response_model=ActionResponse)
    async def process_now(request: Request):
        """Manual "process now" trigger."""
        task = _pipeline(request).worker.start_processing()
        return ActionResponse(started=task is not None)

    @app.post("/api/v1/lifecycle/active", response_model=ActionResponse)
    async def lifecycle_active(request: Request):
        task = _pipeline(request).worker.app_did_become_active()
        return ActionResponse(started=task is not None)

    @app.post("/api/v1/lifecycle/background", response_model=ActionResponse)
    async def lifecycle_background(request: Request):
        scheduled = _pipeline(request).worker.app_did_enter_background()
        return ActionResponse(started=scheduled)

    @app.get("/api/v1/drinks/stats")
    async def drink_stats(request: Request):
        """Quartile stats per normalized drink name (null = use fixed bands)."""
        try:
            cafes = await _pipeline(request).record_store.fetch_all_cafes()
        except RecordStoreError as e:
            logger.error("Could not load cafes for stats: %s", e)
            return JSONResponse(status_code=502, content={"detail": str(e)})

        return {
            name: (
                None if stats is None else {
                    "minPrice": stats.min_price,
                    "maxPrice": stats.max_price,
                    "q1": stats.q1,
                    "median": stats.median,
                    "q3": stats.q3,
                }
            )
            for name, stats in price_stats_by_drink(cafes).items()
        }

    @app.get("/health")
    async def health(request: Request):
        pipeline = _pipeline(request)
        return {
            "status": "healthy",
            "pending_count": pipeline.store.get_pending_count(),
            "is_processing": pipeline.worker.is_processing,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
