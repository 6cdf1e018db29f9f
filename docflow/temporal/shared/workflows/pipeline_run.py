"""Ingest workflow: split, extract, aggregate and sync a document to the ERP."""

from typing import Any, Dict, Optional

from temporalio import workflow

from docflow.core.exceptions import RunCancelledError, StageFailedError
from docflow.schemas.stages import CANCEL_SIGNAL, REVIEW_APPROVED_SIGNAL
from docflow.temporal.core.workflow_registry import WorkflowRegistry, WorkflowType
from docflow.temporal.shared.workflows.mixin import StageCoordinatorMixin


@WorkflowRegistry.register(category=WorkflowType.PIPELINE)
@workflow.defn
class PipelineRunWorkflow(StageCoordinatorMixin):
    """Runs one ingest pipeline run from upload to ERP delivery."""

    def __init__(self):
        self._init_coordinator()

    @workflow.signal(name=REVIEW_APPROVED_SIGNAL)
    def review_approved(self, payload: Optional[Dict[str, Any]] = None) -> None:
        """Resume a run suspended for review, optionally with corrections."""
        self._approve_review(payload)

    @workflow.signal(name=CANCEL_SIGNAL)
    def cancel(self) -> None:
        self._request_cancel()

    @workflow.query
    def get_status(self) -> dict:
        """Query handler for real-time status updates."""
        return self._status_snapshot()

    @workflow.query
    def current_stage(self) -> str:
        return self._current_stage

    @workflow.run
    async def run(self, run_input: Dict[str, Any]) -> dict:
        """Execute the ingest stages for one run.

        Args:
            run_input: ``{"run_id", "input_key", "pipeline", "payload"}``
        """
        self._run_id = run_input["run_id"]
        payload = run_input.get("payload") or {}
        review_enabled = bool(payload.get("review_before_erp_sync"))
        run_id = self._run_id

        try:
            splitting = await self._run_stage(
                "splitting",
                lambda: self._activity("prepare_document", run_id, payload, "splitting"),
            )
            self._document_id = splitting.document_id

            if splitting.already_processed:
                await self._skip_stages(
                    ["processing", "aggregating", "review", "erp_sync"],
                    f"document {splitting.document_id} already processed",
                )
                return await self._complete_run(
                    {"document_id": splitting.document_id, "deduplicated": True},
                    notify=False,
                )

            chunks = [chunk.model_dump() for chunk in splitting.chunks] if splitting.chunks else None
            processing = await self._run_stage(
                "processing",
                lambda: self._activity("extract_document_chunks", run_id, self._document_id, chunks),
            )

            outcomes = [outcome.model_dump(mode="json") for outcome in processing.outcomes]
            aggregating = await self._run_stage(
                "aggregating",
                lambda: self._activity("merge_chunk_outcomes", run_id, self._document_id, outcomes, "aggregating"),
            )
            result_id = aggregating.result_id

            if review_enabled and aggregating.needs_review:
                review = await self._await_review(result_id, aggregating.review_reasons)
                result_id = review.result_id or result_id
            else:
                await self._skip_stages(["review"], "review not required")

            erp_sync = await self._run_stage(
                "erp_sync",
                lambda: self._activity("deliver_to_erp", run_id, result_id, "erp_sync"),
            )
        except RunCancelledError:
            return await self._cancel_run()
        except StageFailedError as e:
            await self._fail_run(e)

        return await self._complete_run({
            "document_id": self._document_id,
            "result_id": result_id,
            "chunk_count": aggregating.chunk_count,
            "failed_chunk_count": aggregating.failed_chunk_count,
            "erp_delivered": erp_sync.delivered,
        })
