"""Persistence of reviewer-confirmed line -> product matches.

One row per tenant, supplier and normalized description: confirming the same
description again moves it to the newly chosen product.
"""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from invoicing.extraction.parsing import normalize_supplier_name
from invoicing.shared.db import utcnow
from invoicing.store.models import ProductMatchHistory

logger = logging.getLogger(__name__)


def supplier_key_of(supplier_name: str | None) -> str | None:
    if not supplier_name:
        return None
    return normalize_supplier_name(supplier_name) or None


class ProductMatchStore:
    """Repository for the tenant's product match history."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def history(self, tenant_id: int, supplier_name: str | None = None) -> list[ProductMatchHistory]:
        """Confirmed matches, newest first, restricted to the supplier when given."""
        stmt = select(ProductMatchHistory).where(ProductMatchHistory.tenant_id == tenant_id)
        supplier_key = supplier_key_of(supplier_name)
        if supplier_key is not None:
            stmt = stmt.where(ProductMatchHistory.supplier_key == supplier_key)
        stmt = stmt.order_by(ProductMatchHistory.updated_at.desc(), ProductMatchHistory.id.desc())
        return list(self.session.scalars(stmt))

    def record(
        self,
        tenant_id: int,
        description: str,
        product_id: int,
        supplier_name: str | None = None,
        initial_confidence: int | None = None,
        confirmed_by: int | None = None,
    ) -> ProductMatchHistory:
        """Save a confirmed match, replacing an earlier one for the same description.

        Args:
            tenant_id: Owning tenant
            description: Line description as printed on the invoice
            product_id: Catalog product the reviewer confirmed
            supplier_name: Supplier of the invoice, if known
            initial_confidence: Confidence of the automatic proposal, if any
            confirmed_by: Reviewer

        Returns:
            The stored history row
        """
        description_key = normalize_supplier_name(description)
        supplier_key = supplier_key_of(supplier_name)

        stmt = select(ProductMatchHistory).where(
            ProductMatchHistory.tenant_id == tenant_id,
            ProductMatchHistory.description_key == description_key,
            ProductMatchHistory.supplier_key.is_(None)
            if supplier_key is None
            else ProductMatchHistory.supplier_key == supplier_key,
        )
        entry = self.session.scalar(stmt.limit(1))
        if entry is None:
            entry = ProductMatchHistory(
                tenant_id=tenant_id,
                description=description,
                description_key=description_key,
                supplier_key=supplier_key,
                product_id=product_id,
                initial_confidence=initial_confidence,
                confirmed_by=confirmed_by,
            )
            self.session.add(entry)
        else:
            entry.product_id = product_id
            entry.confirmed_by = confirmed_by
            entry.updated_at = utcnow()
            if initial_confidence is not None:
                entry.initial_confidence = initial_confidence
        self.session.flush()

        logger.debug(f"Match '{description}' -> product {product_id} saved for tenant {tenant_id}")
        return entry
