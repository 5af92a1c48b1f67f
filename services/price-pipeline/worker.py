"""Sequential extraction worker.

Drains the queue one job at a time: load image -> extraction service ->
espresso check -> record store commit -> complete or fail. Exactly one job is
in flight; jobs run in insertion order with a short pause between them.

The loop is started from two contexts that share the same store: a
foreground trigger and a background window granted by the host. The
``is_processing`` flag keeps them from running concurrently. Cancellation is
cooperative and checked between jobs; a job that already started runs to
completion.
"""

import asyncio
import logging
from uuid import UUID

from auth import TokenProvider
from background import (
    BackgroundSchedulingError,
    BackgroundTask,
    BackgroundTaskRequest,
    BackgroundTaskScheduler,
)
from compression import reencode_jpeg
from config import settings
from extraction_client import AuthenticationFailed, ExtractionClient
from models import Contributor, PendingExtraction, utcnow
from queue_store import ExtractionQueueStore
from record_store import RecordStore, add_or_update_cafe
from retry_policy import NoAutomaticRetry, RetryPolicy
from shared_inbox import SharedInbox, import_shared_extractions

logger = logging.getLogger(__name__)

ERROR_IMAGE_NOT_LOADED = "Could not load image"
ERROR_NO_ESPRESSO = "No espresso price found in image"


class ExtractionWorker:
    """Processes pending extractions from a queue store."""

    def __init__(
        self,
        store: ExtractionQueueStore,
        client: ExtractionClient,
        record_store: RecordStore,
        token_provider: TokenProvider,
        inbox: SharedInbox | None = None,
        scheduler: BackgroundTaskScheduler | None = None,
        retry_policy: RetryPolicy | None = None,
        contributor: Contributor | None = None,
        inter_job_delay: float | None = None,
        commit_jpeg_quality: int | None = None,
        background_task_id: str | None = None,
        background_earliest_begin: float | None = None,
    ):
        self._store = store
        self._client = client
        self._record_store = record_store
        self._tokens = token_provider
        self._inbox = inbox
        self._scheduler = scheduler
        self._retry_policy = retry_policy or NoAutomaticRetry()
        self._contributor = contributor
        self._inter_job_delay = inter_job_delay if inter_job_delay is not None else settings.INTER_JOB_DELAY_SECONDS
        self._commit_quality = commit_jpeg_quality if commit_jpeg_quality is not None else settings.COMMIT_JPEG_QUALITY
        self._background_task_id = background_task_id or settings.BACKGROUND_TASK_ID
        self._background_earliest_begin = (
            background_earliest_begin if background_earliest_begin is not None
            else settings.BACKGROUND_EARLIEST_BEGIN_SECONDS
        )

        self._is_processing = False
        self._cancelled = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.current_progress: str | None = None

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    # Foreground

    def start_processing(self) -> asyncio.Task | None:
        """Start draining the queue in a task unless already running or idle."""
        if self._is_processing:
            logger.debug("Processing already running; start ignored")
            return None
        if self._store.get_pending_count() == 0:
            return None

        self._is_processing = True
        self._cancelled.clear()
        self._task = asyncio.get_running_loop().create_task(self._drain())
        return self._task

    def stop_processing(self) -> None:
        """Request cancellation; takes effect before the next job starts."""
        if self._is_processing:
            logger.info("Stopping extraction processing")
        self._cancelled.set()
        self.current_progress = None

    async def wait_until_idle(self, timeout: float) -> bool:
        """Wait for the foreground pass to finish its current job.

        Cancels the pass if it is still running after ``timeout`` seconds and
        returns False in that case.
        """
        task = self._task
        if task is None or task.done():
            return True
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Extraction pass still running after %.0fs; cancelling", timeout)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return False
        return True

    async def process_pending_extractions(self) -> int:
        """Drain the queue in the calling task. Returns the number of jobs run."""
        if self._is_processing:
            logger.debug("Processing already running; drain skipped")
            return 0

        self._is_processing = True
        self._cancelled.clear()
        return await self._drain()

    async def _drain(self) -> int:
        processed = 0
        try:
            while not self._cancelled.is_set():
                extraction = self._store.get_next_pending()
                if extraction is None:
                    break

                await self.process_extraction(extraction)
                processed += 1

                await self._pause()
        finally:
            self._is_processing = False
            self.current_progress = None

        logger.info("Extraction pass finished: %d job(s) processed", processed)
        return processed

    async def _pause(self) -> None:
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=self._inter_job_delay)
        except asyncio.TimeoutError:
            pass

    # Single job

    async def process_extraction(self, extraction: PendingExtraction) -> bool:
        """Run one job to completion. Failures are recorded on the job, never raised."""
        self.current_progress = f"Processing {extraction.cafe_name}..."
        self._store.mark_as_extracting(extraction)

        image = self._store.load_image(extraction)
        if image is None:
            self._store.mark_as_failed(extraction.id, ERROR_IMAGE_NOT_LOADED)
            return False

        try:
            self.current_progress = "Extracting prices from menu..."
            token = await self._tokens.get_valid_token()
            result = await self._client.extract(image, token)

            if result.espresso_price is None:
                logger.info(
                    "Extraction %s: %d drink(s) but no espresso price",
                    extraction.id, len(result.drinks),
                )
                self._store.mark_as_failed(extraction.id, ERROR_NO_ESPRESSO)
                return False

            self._store.update_with_results(extraction.id, result.drinks)

            self.current_progress = "Saving to cloud..."
            menu_image = await asyncio.to_thread(reencode_jpeg, image, self._commit_quality)
            await add_or_update_cafe(
                self._record_store,
                extraction.cafe_snapshot(),
                result.drinks,
                self._contributor,
                note=None,
                menu_image=menu_image,
            )
        except AuthenticationFailed as e:
            self._tokens.invalidate()
            self._store.mark_as_failed(extraction.id, str(e))
            return False
        except Exception as e:
            logger.error("Extraction %s failed: %s", extraction.id, e)
            self._store.mark_as_failed(extraction.id, str(e) or type(e).__name__)
            return False

        self._store.mark_as_completed(extraction.id)
        self.current_progress = None
        logger.info("Extraction %s completed for cafe %s", extraction.id, extraction.cafe_id)
        return True

    # Retry

    def retry_extraction(self, extraction_id: UUID) -> bool:
        """Manual retry: put a failed job back in the queue and start processing.

        Returns False unless the job is failed and under the retry bound.
        """
        if not self._store.is_retryable(extraction_id):
            return False
        self._store.reset_for_retry(extraction_id)
        self.start_processing()
        return True

    def requeue_due_failures(self) -> int:
        """Reset failed jobs the retry policy considers due."""
        now = utcnow()
        due = [e for e in self._store.extractions if self._retry_policy.should_retry(e, now)]
        for extraction in due:
            self._store.reset_for_retry(extraction.id)
        if due:
            logger.info("Requeued %d failed extraction(s) for retry", len(due))
        return len(due)

    # Background

    def register_background_task(self) -> None:
        if self._scheduler is not None:
            self._scheduler.register(self._background_task_id, self.handle_background_task)

    def schedule_background_processing(self) -> bool:
        if self._scheduler is None:
            return False
        request = BackgroundTaskRequest(
            identifier=self._background_task_id,
            earliest_begin=self._background_earliest_begin,
        )
        try:
            self._scheduler.submit(request)
        except BackgroundSchedulingError as e:
            logger.warning("Failed to schedule background task: %s", e)
            return False
        logger.info("Background task scheduled")
        return True

    async def handle_background_task(self, task: BackgroundTask) -> None:
        """Run a background window: re-register, drain until done or expired."""
        self.schedule_background_processing()
        task.expiration_handler = self.stop_processing

        if self._is_processing and self._task is not None:
            # The foreground pass already owns the store; wait for it instead
            await asyncio.shield(self._task)
        else:
            await self.process_pending_extractions()

        task.set_task_completed(success=not task.expired)

    # Host lifecycle

    def app_did_become_active(self) -> asyncio.Task | None:
        if self._inbox is not None:
            import_shared_extractions(self._store, self._inbox)
        self.requeue_due_failures()
        return self.start_processing()

    def app_did_enter_background(self) -> bool:
        if self._store.get_pending_count() > 0:
            return self.schedule_background_processing()
        return False
