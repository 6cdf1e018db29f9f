"""ERP delivery through the transactional outbox."""

from uuid import UUID

from temporalio import activity

from docflow.core.config import settings
from docflow.core.database import async_session_maker
from docflow.core.exceptions import DocumentNotFoundError
from docflow.repositories.result_repository import ErpOutboxRepository, ExtractionResultRepository
from docflow.services.erp_client import ErpClient
from docflow.utils.logging import get_logger
from docflow.temporal.core.activity_registry import ActivityRegistry

LOGGER = get_logger(__name__)


def build_erp_payload(run_id: str, result) -> dict:
    return {
        "run_id": run_id,
        "document_id": str(result.document_id),
        "result_id": str(result.id),
        "invoice_header": result.header_fields,
        "transport_line_items": result.line_items,
        "unclaimed_documents": result.unassigned_evidence,
        "confidence": result.confidence,
    }


@ActivityRegistry.register("shared", "deliver_to_erp")
@activity.defn
async def deliver_to_erp(run_id: str, result_id: str, stage_name: str = "erp_sync") -> dict:
    """Write the outbox row for ``result_id`` and push it to the ERP.

    A retried activity finds the same outbox row; one already sent is not
    pushed again.
    """
    client = ErpClient(
        settings.erp.endpoint_url,
        api_key=settings.erp.api_key,
        timeout=settings.erp.timeout,
    )

    async with async_session_maker() as session:
        result_repo = ExtractionResultRepository(session)
        outbox_repo = ErpOutboxRepository(session)

        result = await result_repo.get_by_id(UUID(result_id))
        if result is None:
            raise DocumentNotFoundError(f"Extraction result {result_id} not found")

        item = await outbox_repo.get_or_create(
            run_id=UUID(run_id),
            document_id=result.document_id,
            result_id=result.id,
            payload=build_erp_payload(run_id, result),
        )
        await session.commit()

        response = {"stage": stage_name, "outbox_id": str(item.id), "targets": ["erp"]}
        if item.status == "sent":
            LOGGER.info(f"Outbox item {item.id} already sent", extra={"run_id": run_id})
            return {**response, "status": "sent", "delivered": True}

        if not client.is_configured:
            LOGGER.warning("ERP_ENDPOINT_URL not set; outbox item left pending", extra={"run_id": run_id})
            return {**response, "status": item.status, "delivered": False}

        await outbox_repo.mark_in_progress(item)
        await session.commit()
        try:
            await client.push(item.payload, idempotency_key=str(item.id))
        except Exception as e:
            await outbox_repo.mark_failed(item, str(e))
            await session.commit()
            activity.logger.warning(
                f"ERP delivery failed for outbox item {item.id}: {e}",
                extra={"run_id": run_id, "attempts": item.attempts}
            )
            raise

        await outbox_repo.mark_sent(item)
        await session.commit()
        activity.logger.info(f"Delivered outbox item {item.id} to ERP", extra={"run_id": run_id})
        return {**response, "status": "sent", "delivered": True}
