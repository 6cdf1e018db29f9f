"""Service behind the runs and documents API."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from temporalio.client import Client as TemporalClient

from docflow.core.config import settings
from docflow.core.exceptions import (
    DocumentNotFoundError,
    InvalidRunStateError,
    RunNotFoundError,
    ValidationError,
)
from docflow.database.models import PipelineRun
from docflow.repositories.document_repository import DocumentRepository
from docflow.repositories.result_repository import ExtractionResultRepository
from docflow.repositories.run_repository import RunRepository
from docflow.repositories.stage_repository import StageResultRepository
from docflow.schemas.runs import (
    RunHandle,
    RunListResponse,
    RunStatsResponse,
    RunStatusResponse,
    StageResultResponse,
)
from docflow.schemas.stages import (
    CANCEL_SIGNAL,
    REVIEW_APPROVED_SIGNAL,
    SUPPORTED_SIGNALS,
    PipelineType,
    RunStatus,
    StageState,
)
from docflow.services.base_service import BaseService
from docflow.services.dispatcher import Dispatcher
from docflow.services.duplicate_detector import compute_content_hash
from docflow.services.queue_monitor import QueueMonitor
from docflow.services.storage_service import StorageService

PDF_MAGIC = b"%PDF"


def to_status_response(run: PipelineRun) -> RunStatusResponse:
    return RunStatusResponse(
        run_id=str(run.id),
        input_key=run.input_key,
        pipeline=run.pipeline,
        stage=run.stage,
        status=run.status,
        awaiting_signal=run.awaiting_signal,
        attempts_per_stage=run.attempts_per_stage or {},
        retry_count=run.retry_count or 0,
        document_id=str(run.document_id) if run.document_id else None,
        error_summary=run.error_summary,
        created_at=run.created_at,
        finished_at=run.finished_at,
    )


class RunService(BaseService):
    """Submits, inspects and steers pipeline runs.

    Coordinates the run repositories, the dispatcher and the Temporal client.
    """

    def __init__(
        self,
        session: AsyncSession,
        temporal_client: TemporalClient,
        storage_service: Optional[StorageService] = None,
        task_queue: Optional[str] = None,
    ):
        """Initialize run service.

        Args:
            session: Async database session for repository access
            temporal_client: Connected Temporal client
            storage_service: Blob storage for uploads
            task_queue: Task queue runs are dispatched to
        """
        self.session = session
        self.run_repo = RunRepository(session)
        super().__init__(self.run_repo)
        self.doc_repo = DocumentRepository(session)
        self.stage_repo = StageResultRepository(session)
        self.result_repo = ExtractionResultRepository(session)
        self.temporal_client = temporal_client
        self.storage_service = storage_service or StorageService()
        self.task_queue = task_queue or settings.temporal_task_queue
        self.dispatcher = Dispatcher(
            self.run_repo,
            temporal_client,
            self.task_queue,
            default_priority=settings.pipeline.default_priority,
        )
        self.queue_monitor = QueueMonitor(self.run_repo, temporal_client, self.task_queue)

    async def run(self, *args, **kwargs) -> Any:
        """Route to the handler for ``action``."""
        action = kwargs.pop("action", None)
        handlers = {
            "submit_upload": self._submit_upload,
            "get_status": self._get_status,
            "list_runs": self._list_runs,
            "get_stats": self._get_stats,
            "signal": self._signal,
            "cancel": self._cancel,
            "retry": self.dispatcher.retry,
            "stage_history": self._stage_history,
            "get_result": self._get_result,
            "export_link": self._export_link,
            "reprocess_document": self._reprocess_document,
        }
        handler = handlers.get(action)
        if handler is None:
            raise ValidationError(f"Unknown action: {action}")
        return await handler(**kwargs)

    def validate(self, *args, **kwargs):
        action = kwargs.get("action")
        if action == "submit_upload":
            content = kwargs.get("content") or b""
            if not content:
                raise ValidationError("Uploaded file is empty")
            if not content.startswith(PDF_MAGIC):
                raise ValidationError("Uploaded file is not a PDF")
            pipeline = kwargs.get("pipeline")
            if pipeline not in {p.value for p in PipelineType}:
                raise ValidationError(f"Unknown pipeline: {pipeline}")
            priority = kwargs.get("priority")
            if priority is not None and not 1 <= priority <= 5:
                raise ValidationError("priority must be between 1 and 5")
        elif action == "signal":
            if kwargs.get("name") not in SUPPORTED_SIGNALS:
                raise ValidationError(
                    f"Unsupported signal {kwargs.get('name')!r}; expected one of {', '.join(SUPPORTED_SIGNALS)}"
                )
        elif action == "list_runs":
            limit = kwargs.get("limit", 50)
            if not 1 <= limit <= 200:
                raise ValidationError("limit must be between 1 and 200")
        elif action == "export_link":
            if not 60 <= kwargs.get("expires_in", 3600) <= 604800:
                raise ValidationError("expires_in must be between 60 seconds and 7 days")

    # Public entry points

    async def submit_upload(
        self,
        content: bytes,
        file_name: Optional[str] = None,
        content_type: str = "application/pdf",
        pipeline: str = PipelineType.INGEST.value,
        priority: Optional[int] = None,
        input_key: Optional[str] = None,
    ) -> RunHandle:
        return await self.execute(
            action="submit_upload",
            content=content,
            file_name=file_name,
            content_type=content_type,
            pipeline=pipeline,
            priority=priority,
            input_key=input_key,
        )

    async def get_status(self, run_id: UUID, live: bool = False) -> Dict[str, Any]:
        return await self.execute(action="get_status", run_id=run_id, live=live)

    async def list_runs(
        self,
        status: Optional[str] = None,
        pipeline: Optional[str] = None,
        stage: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> RunListResponse:
        return await self.execute(
            action="list_runs", status=status, pipeline=pipeline, stage=stage, limit=limit, offset=offset
        )

    async def get_stats(self) -> RunStatsResponse:
        return await self.execute(action="get_stats")

    async def signal(self, run_id: UUID, name: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.execute(action="signal", run_id=run_id, name=name, payload=payload)

    async def cancel(self, run_id: UUID) -> Dict[str, Any]:
        return await self.execute(action="cancel", run_id=run_id)

    async def retry(self, run_id: UUID) -> RunHandle:
        return await self.execute(action="retry", run_id=run_id)

    async def get_stage_history(self, run_id: UUID) -> List[StageResultResponse]:
        return await self.execute(action="stage_history", run_id=run_id)

    async def get_result(self, run_id: UUID) -> Optional[Dict[str, Any]]:
        return await self.execute(action="get_result", run_id=run_id)

    async def get_export_link(self, run_id: UUID, expires_in: int = 3600) -> Dict[str, Any]:
        return await self.execute(action="export_link", run_id=run_id, expires_in=expires_in)

    async def reprocess_document(self, document_id: UUID, priority: Optional[int] = None) -> RunHandle:
        return await self.execute(action="reprocess_document", document_id=document_id, priority=priority)

    # Handlers

    async def _require_run(self, run_id: UUID) -> PipelineRun:
        run = await self.run_repo.get_by_id(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    async def _submit_upload(
        self,
        content: bytes,
        file_name: Optional[str],
        content_type: str,
        pipeline: str,
        priority: Optional[int],
        input_key: Optional[str],
    ) -> RunHandle:
        content_hash = compute_content_hash(content)
        bucket = settings.storage.documents_bucket
        storage_path = f"uploads/{content_hash}.pdf"

        # Content-addressed key, so re-uploading the same bytes overwrites in place
        await self.storage_service.upload_bytes(content, bucket, storage_path, content_type=content_type)

        key = input_key or f"{pipeline}-{content_hash}"
        payload = {
            "bucket": bucket,
            "storage_path": storage_path,
            "file_name": file_name,
            "mime_type": content_type,
            "content_hash": content_hash,
            "review_before_erp_sync": settings.pipeline.review_before_erp_sync,
        }
        self.logger.info(
            f"Submitting {pipeline} run for {file_name or content_hash}",
            extra={"input_key": key, "byte_size": len(content)}
        )
        return await self.dispatcher.submit(key, payload, pipeline=pipeline, priority=priority)

    async def _get_status(self, run_id: UUID, live: bool = False) -> Dict[str, Any]:
        run = await self._require_run(run_id)
        data = to_status_response(run).model_dump(mode="json")
        if live and run.temporal_workflow_id and not RunStatus(run.status).is_terminal:
            handle = self.temporal_client.get_workflow_handle(run.temporal_workflow_id)
            try:
                data["live"] = await handle.query("get_status")
            except Exception as e:
                # Not yet picked up by a worker, or already closed
                self.logger.warning(f"Live status query failed for run {run_id}: {e}")
                data["live"] = None
        return data

    async def _list_runs(
        self,
        status: Optional[str],
        pipeline: Optional[str],
        stage: Optional[str],
        limit: int,
        offset: int,
    ) -> RunListResponse:
        runs, total = await self.run_repo.list_runs(
            status=status, pipeline=pipeline, stage=stage, skip=offset, limit=limit
        )
        return RunListResponse(total=total, runs=[to_status_response(run) for run in runs])

    async def _get_stats(self) -> RunStatsResponse:
        counts = await self.run_repo.count_by_status()
        queue = await self.queue_monitor.get_job_counts()
        return RunStatsResponse(counts_by_status=counts, queue=queue)

    async def _signal(self, run_id: UUID, name: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        run = await self._require_run(run_id)
        if RunStatus(run.status).is_terminal:
            raise InvalidRunStateError(f"Run {run_id} is {run.status} and no longer accepts signals")
        if name == REVIEW_APPROVED_SIGNAL and run.status != RunStatus.SUSPENDED.value:
            raise InvalidRunStateError(f"Run {run_id} is not awaiting review")
        if not run.temporal_workflow_id:
            raise InvalidRunStateError(f"Run {run_id} has no workflow yet")

        handle = self.temporal_client.get_workflow_handle(run.temporal_workflow_id)
        if name == CANCEL_SIGNAL:
            await handle.signal(name)
        else:
            await handle.signal(name, payload or {})

        await self.run_repo.emit_event(run.id, f"signal.{name}", payload or {})
        await self.session.commit()
        self.logger.info(f"Sent {name} signal to run {run_id}")
        return {"run_id": str(run.id), "signal": name, "delivered": True}

    async def _cancel(self, run_id: UUID) -> Dict[str, Any]:
        return await self._signal(run_id, CANCEL_SIGNAL, None)

    async def _stage_history(self, run_id: UUID) -> List[StageResultResponse]:
        await self._require_run(run_id)
        results = await self.stage_repo.list_for_run(run_id)
        return [
            StageResultResponse(
                stage_name=r.stage_name,
                attempt_number=r.attempt_number,
                state=r.state,
                started_at=r.started_at,
                finished_at=r.finished_at,
                error_detail=r.error_detail,
                payload=r.payload,
            )
            for r in results
        ]

    async def _get_result(self, run_id: UUID) -> Optional[Dict[str, Any]]:
        await self._require_run(run_id)
        result = await self.result_repo.get_latest_for_run(run_id)
        if result is None:
            return None
        return {
            "result_id": str(result.id),
            "run_id": str(result.run_id),
            "document_id": str(result.document_id),
            "source_result_id": str(result.source_result_id) if result.source_result_id else None,
            "header_fields": result.header_fields,
            "line_items": result.line_items,
            "unassigned_evidence": result.unassigned_evidence,
            "present_fields": result.present_fields,
            "missing_fields": result.missing_fields,
            "confidence": result.confidence,
            "was_chunked": result.was_chunked,
            "chunk_count": result.chunk_count,
            "failed_chunk_count": result.failed_chunk_count,
            "created_at": result.created_at.isoformat() if result.created_at else None,
        }

    async def _export_link(self, run_id: UUID, expires_in: int) -> Dict[str, Any]:
        """Signed download URL for the workbook written by the run's latest export."""
        await self._require_run(run_id)
        exports = [
            r for r in await self.stage_repo.list_for_run(run_id)
            if r.stage_name == "export" and r.state == StageState.SUCCEEDED.value and r.payload
        ]
        if not exports:
            raise RunNotFoundError(f"Run {run_id} has no export yet")

        export = exports[-1].payload
        link = await self.storage_service.get_signed_url(
            settings.storage.exports_bucket, export["storage_path"], expires_in=expires_in
        )
        return {**link, "filename": export.get("filename"), "row_count": export.get("row_count", 0)}

    async def _reprocess_document(self, document_id: UUID, priority: Optional[int]) -> RunHandle:
        document = await self.doc_repo.get_by_id(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        if not document.storage_path:
            raise ValidationError(f"Document {document_id} has no stored file to reprocess")

        previous = await self.run_repo.count(filters={"document_id": document.id})
        key = f"{document.content_hash}-reprocess-{previous + 1}"
        payload = {
            "bucket": settings.storage.documents_bucket,
            "storage_path": document.storage_path,
            "file_name": document.file_name,
            "mime_type": document.mime_type,
            "content_hash": document.content_hash,
            "document_id": str(document.id),
            "force": True,
            "review_before_erp_sync": settings.pipeline.review_before_erp_sync,
        }
        self.logger.info(f"Reprocessing document {document_id}", extra={"input_key": key})
        return await self.dispatcher.submit(
            key,
            payload,
            pipeline=PipelineType.INGEST.value,
            priority=priority,
            document_id=document.id,
        )
