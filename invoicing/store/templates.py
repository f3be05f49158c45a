"""Template persistence with atomic counter updates.

Counters are never read-modified-written in Python: every change is a single
UPDATE statement so concurrent workers cannot lose increments, and the
confidence score is recomputed in the same statement that changes a counter.
"""

import logging
from typing import Any

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.orm import Session

from invoicing.extraction.parsing import normalize_supplier_name
from invoicing.shared.db import utcnow
from invoicing.store.models import Template

logger = logging.getLogger(__name__)


def _same_supplier(supplier_name: str, supplier_tax_id: str | None) -> ColumnElement[bool]:
    if supplier_tax_id:
        return Template.supplier_tax_id == supplier_tax_id
    return Template.supplier_key == normalize_supplier_name(supplier_name)


class TemplateStore:
    """Repository for per-tenant, per-supplier extraction templates."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, template_id: int) -> Template | None:
        return self.session.get(Template, template_id)

    def active_for_tenant(self, tenant_id: int) -> list[Template]:
        """All active templates of a tenant (the matcher filters by supplier)."""
        stmt = select(Template).where(Template.tenant_id == tenant_id, Template.is_active.is_(True))
        return list(self.session.scalars(stmt))

    def has_active_for_supplier(
        self, tenant_id: int, supplier_name: str, supplier_tax_id: str | None
    ) -> bool:
        """Whether the supplier already has an active template (by tax id, else name)."""
        stmt = select(Template.id).where(
            Template.tenant_id == tenant_id,
            Template.is_active.is_(True),
            _same_supplier(supplier_name, supplier_tax_id),
        )
        return self.session.scalar(stmt.limit(1)) is not None

    def record_usage(self, template_id: int) -> None:
        """Atomically count one use and recompute confidence.

        The right-hand side of an UPDATE sees the pre-update row, so the new
        confidence is successes / (old uses + 1).
        """
        self.session.execute(
            update(Template)
            .where(Template.id == template_id)
            .values(
                times_used=Template.times_used + 1,
                confidence_score=100.0 * Template.times_successful / (Template.times_used + 1),
                updated_at=utcnow(),
            )
        )
        logger.debug(f"Template {template_id} usage recorded")

    def record_success(self, template_id: int) -> bool:
        """Atomically count one success and recompute confidence.

        Successes can never exceed uses; a success without a matching use is
        ignored.

        Returns:
            True if the counter was incremented
        """
        result = self.session.execute(
            update(Template)
            .where(
                Template.id == template_id,
                Template.times_successful < Template.times_used,
            )
            .values(
                times_successful=Template.times_successful + 1,
                confidence_score=100.0 * (Template.times_successful + 1) / Template.times_used,
                updated_at=utcnow(),
            )
        )
        updated = result.rowcount == 1
        if updated:
            logger.info(f"Template {template_id} success recorded")
        else:
            logger.warning(f"Template {template_id} success ignored (no matching usage)")
        return updated

    def deactivate_if_collapsed(self, template_id: int, min_uses: int, floor: float) -> bool:
        """Deactivate a well-used template whose confidence fell below the floor.

        Templates are never deleted so past runs stay auditable.

        Returns:
            True if the template was deactivated by this call
        """
        result = self.session.execute(
            update(Template)
            .where(
                Template.id == template_id,
                Template.is_active.is_(True),
                Template.times_used >= min_uses,
                Template.confidence_score < floor,
            )
            .values(is_active=False, updated_at=utcnow())
        )
        deactivated = result.rowcount == 1
        if deactivated:
            logger.warning(f"Template {template_id} deactivated (confidence below {floor}%)")
        return deactivated

    def create_template(
        self,
        tenant_id: int,
        supplier_name: str,
        supplier_tax_id: str | None,
        family: str,
        fingerprint: dict[str, Any],
        zone_config: dict[str, Any],
        created_from_ai: bool = True,
    ) -> Template:
        """Create a new active template version seeded with one successful use.

        Any other active template of the same supplier and fingerprint family
        is deactivated so only one version per family is active.

        Args:
            tenant_id: Owning tenant
            supplier_name: Supplier display name
            supplier_tax_id: Supplier tax id if known
            family: Fingerprint family key
            fingerprint: Serialized LayoutFingerprint
            zone_config: Serialized ZoneConfig
            created_from_ai: Whether the template was learned from an AI run

        Returns:
            The new Template row (flushed, with id)
        """
        supplier_key = normalize_supplier_name(supplier_name)
        same_supplier = _same_supplier(supplier_name, supplier_tax_id)

        latest = self.session.scalar(
            select(func.max(Template.version)).where(
                Template.tenant_id == tenant_id, same_supplier, Template.family == family
            )
        )
        self.session.execute(
            update(Template)
            .where(
                Template.tenant_id == tenant_id,
                same_supplier,
                Template.family == family,
                Template.is_active.is_(True),
            )
            .values(is_active=False, updated_at=utcnow())
        )

        template = Template(
            tenant_id=tenant_id,
            supplier_name=supplier_name,
            supplier_tax_id=supplier_tax_id,
            supplier_key=supplier_key,
            family=family,
            fingerprint=fingerprint,
            zone_config=zone_config,
            version=(latest or 0) + 1,
            confidence_score=100.0,
            times_used=1,
            times_successful=1,
            is_active=True,
            created_from_ai=created_from_ai,
        )
        self.session.add(template)
        self.session.flush()

        logger.info(
            f"Created template {template.id} v{template.version} for tenant {tenant_id} "
            f"supplier '{supplier_name}'"
        )
        return template
