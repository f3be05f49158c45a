"""Invoice intake: validate, store, record, enqueue.

Submission never extracts anything. It returns as soon as the file is
stored, the invoice exists in `pending` and a job is on the queue; the
worker does the rest. An invoice whose enqueue failed stays pending and is
picked up by the recovery sweep.
"""

import asyncio
import logging

from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from invoicing.queue.base import InvoiceJob, JobQueue
from invoicing.shared.config import Settings
from invoicing.shared.db import session_scope
from invoicing.shared.errors import BadInputError, StorageError
from invoicing.storage.service import BlobStore, build_object_key
from invoicing.store.invoices import InvoiceRepository

logger = logging.getLogger(__name__)


class SubmittedInvoice(BaseModel):
    """Receipt returned to the uploader.

    Attributes:
        invoice_id: New invoice id
        tenant_id: Owning tenant
        status: Always 'pending' at submission
        storage_ref: Blob store key of the raw file
        enqueued: False if the queue was unreachable (recovery will pick it up)
    """

    invoice_id: int
    tenant_id: int
    status: str
    storage_ref: str
    enqueued: bool


class IntakeService:
    """Accepts uploaded invoice files."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        blob_store: BlobStore,
        queue: JobQueue,
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.queue = queue
        self.settings = settings

    def validate_upload(self, data: bytes, content_type: str) -> None:
        """Reject empty, oversized or unsupported files.

        Raises:
            BadInputError: If the file is not acceptable
        """
        if content_type not in self.settings.allowed_content_types:
            raise BadInputError(
                f"unsupported file type '{content_type}'; allowed: "
                f"{', '.join(self.settings.allowed_content_types)}"
            )
        if not data:
            raise BadInputError("file is empty")
        if len(data) > self.settings.max_upload_bytes:
            raise BadInputError(
                f"file is {len(data)} bytes; the limit is {self.settings.max_upload_bytes} bytes"
            )

    def _create(
        self,
        tenant_id: int,
        filename: str,
        content_type: str,
        key: str,
        ocr_text: str | None,
        uploaded_by: int | None,
        upload_source: str,
    ) -> int:
        with session_scope(self.session_factory) as session:
            invoice = InvoiceRepository(session).create(
                tenant_id=tenant_id,
                file_name=filename,
                file_type=content_type,
                storage_ref=key,
                uploaded_by=uploaded_by,
                upload_source=upload_source,
                ocr_text=ocr_text,
            )
            return invoice.id

    async def submit_invoice(
        self,
        tenant_id: int,
        filename: str,
        content_type: str,
        data: bytes,
        ocr_text: str | None = None,
        uploaded_by: int | None = None,
        upload_source: str = "web",
    ) -> SubmittedInvoice:
        """Store an uploaded invoice and queue it for processing.

        Args:
            tenant_id: Uploading tenant
            filename: Client filename
            content_type: MIME type of the file
            data: Raw file bytes
            ocr_text: OCR text, if the client already extracted it
            uploaded_by: Uploading user
            upload_source: Channel (web, mobile, email)

        Returns:
            SubmittedInvoice in status pending

        Raises:
            BadInputError: If the file is rejected
            StorageError: If the file could not be stored
        """
        content_type = content_type.lower()
        self.validate_upload(data, content_type)

        key = build_object_key(self.settings, tenant_id, filename)
        stored = await asyncio.to_thread(self.blob_store.put, data, key, content_type)
        if not stored.success:
            raise StorageError(f"could not store '{filename}': {stored.error}")

        invoice_id = await asyncio.to_thread(
            self._create, tenant_id, filename, content_type, key, ocr_text, uploaded_by, upload_source
        )

        try:
            enqueued = await self.queue.enqueue(
                InvoiceJob(invoice_id=invoice_id, tenant_id=tenant_id, source="upload")
            )
        except Exception:
            logger.exception(f"Enqueue of invoice {invoice_id} failed; recovery will pick it up")
            enqueued = False

        logger.info(f"Invoice {invoice_id} submitted for tenant {tenant_id} ({filename}, {len(data)} bytes)")
        return SubmittedInvoice(
            invoice_id=invoice_id,
            tenant_id=tenant_id,
            status="pending",
            storage_ref=key,
            enqueued=enqueued,
        )
