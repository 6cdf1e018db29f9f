"""Review workflow: classify, extract, validate, review, export and deliver."""

from typing import Any, Dict, Optional

from temporalio import workflow

from docflow.core.exceptions import RunCancelledError, StageFailedError
from docflow.schemas.stages import CANCEL_SIGNAL, REVIEW_APPROVED_SIGNAL
from docflow.temporal.core.workflow_registry import WorkflowRegistry, WorkflowType
from docflow.temporal.shared.workflows.mixin import StageCoordinatorMixin


@WorkflowRegistry.register(category=WorkflowType.PIPELINE)
@workflow.defn
class DocumentReviewWorkflow(StageCoordinatorMixin):
    """Runs the seven-stage review pipeline for one document."""

    def __init__(self):
        self._init_coordinator()

    @workflow.signal(name=REVIEW_APPROVED_SIGNAL)
    def review_approved(self, payload: Optional[Dict[str, Any]] = None) -> None:
        self._approve_review(payload)

    @workflow.signal(name=CANCEL_SIGNAL)
    def cancel(self) -> None:
        self._request_cancel()

    @workflow.query
    def get_status(self) -> dict:
        return self._status_snapshot()

    @workflow.query
    def current_stage(self) -> str:
        return self._current_stage

    @workflow.run
    async def run(self, run_input: Dict[str, Any]) -> dict:
        self._run_id = run_input["run_id"]
        payload = run_input.get("payload") or {}
        run_id = self._run_id

        async def extract() -> dict:
            chunks = [chunk.model_dump() for chunk in parse.chunks] if parse.chunks else None
            processing = await self._activity("extract_document_chunks", run_id, self._document_id, chunks)
            return await self._activity(
                "merge_chunk_outcomes", run_id, self._document_id, processing["outcomes"], "extract"
            )

        try:
            classify = await self._run_stage(
                "classify",
                lambda: self._activity("classify_document", run_id, payload),
            )
            parse = await self._run_stage(
                "parse",
                lambda: self._activity("prepare_document", run_id, payload, "parse"),
            )
            self._document_id = parse.document_id

            if parse.already_processed:
                await self._skip_stages(
                    ["extract", "validate", "review", "export", "deliver"],
                    f"document {parse.document_id} already processed",
                )
                return await self._complete_run(
                    {"document_id": parse.document_id, "deduplicated": True},
                    notify=False,
                )

            extracted = await self._run_stage("extract", extract)
            result_id = extracted.result_id

            validate = await self._run_stage(
                "validate",
                lambda: self._activity("validate_extraction", run_id, result_id),
            )

            if validate.needs_review:
                review = await self._await_review(result_id, validate.reasons)
                result_id = review.result_id or result_id
            else:
                await self._skip_stages(["review"], "validation passed")

            export = await self._run_stage(
                "export",
                lambda: self._activity("export_extraction_workbook", run_id, result_id),
            )
            deliver = await self._run_stage(
                "deliver",
                lambda: self._activity("deliver_to_erp", run_id, result_id, "deliver"),
            )
        except RunCancelledError:
            return await self._cancel_run()
        except StageFailedError as e:
            await self._fail_run(e)

        return await self._complete_run({
            "document_id": self._document_id,
            "document_type": classify.document_type,
            "result_id": result_id,
            "export_path": export.storage_path,
            "erp_delivered": deliver.delivered,
        })
