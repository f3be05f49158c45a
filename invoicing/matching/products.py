"""Invoice line -> catalog product matching.

Lookup order for one line description:

1. the tenant's confirmed matches (restricted to the invoice's supplier when
   it is known): an identical normalized description scores 95, a close one 85;
2. an active product whose normalized name equals the description scores 90;
3. the most similar active product name or code, kept from
   `product_match_min_confidence` upwards.

Automatic matches are only proposals written to the line. They enter the
history once a reviewer confirms them, by linking a line or by approving the
invoice.
"""

import logging
from difflib import SequenceMatcher

from pydantic import BaseModel
from sqlalchemy.orm import Session

from invoicing.extraction.parsing import normalize_supplier_name
from invoicing.integration.catalog import CatalogGateway, Product
from invoicing.shared.config import Settings
from invoicing.store.models import Invoice
from invoicing.store.product_matches import ProductMatchStore

logger = logging.getLogger(__name__)

HISTORY_EXACT_CONFIDENCE = 95
HISTORY_SIMILAR_CONFIDENCE = 85
EXACT_NAME_CONFIDENCE = 90
STRONG_SUGGESTION = 80
MIN_SUGGESTION_SCORE = 60
MIN_TOKEN_LENGTH = 3


class ProductMatch(BaseModel):
    """A proposed catalog product for one invoice line.

    Attributes:
        product_id: Catalog product id
        product_name: Product name, when read from the catalog
        confidence: 0-100
        reason: How the match was found
    """

    product_id: int
    product_name: str | None = None
    confidence: int
    reason: str


def _ratio(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    return SequenceMatcher(None, left, right).ratio()


def _token_score(tokens: list[str], name_key: str, code_key: str) -> int:
    score = 0
    matched = 0
    for token in tokens:
        if token in name_key:
            score += 50
            matched += 1
        elif len(token) >= 4 and token[: int(len(token) * 0.7)] in name_key:
            score += 25
            matched += 1
        if code_key and token in code_key:
            score += 30

    if matched > 1:
        score += matched * 10
    if matched and len(name_key) < 20:
        score += 20
    return min(score, 100)


class ProductMatcher:
    """Proposes catalog products for extracted invoice lines."""

    def __init__(self, gateway: CatalogGateway, settings: Settings) -> None:
        self.gateway = gateway
        self.settings = settings

    def _history_match(
        self, session: Session, tenant_id: int, description_key: str, supplier_name: str | None
    ) -> ProductMatch | None:
        best_score = 0.0
        best_product: int | None = None
        for entry in ProductMatchStore(session).history(tenant_id, supplier_name):
            if entry.description_key == description_key:
                return ProductMatch(
                    product_id=entry.product_id,
                    confidence=HISTORY_EXACT_CONFIDENCE,
                    reason="confirmed match",
                )
            score = _ratio(description_key, entry.description_key)
            if score > best_score:
                best_score, best_product = score, entry.product_id

        if best_product is not None and best_score >= self.settings.product_history_similarity:
            return ProductMatch(
                product_id=best_product,
                confidence=HISTORY_SIMILAR_CONFIDENCE,
                reason=f"similar confirmed match ({best_score:.2f})",
            )
        return None

    def _catalog_match(self, description_key: str, products: list[Product]) -> ProductMatch | None:
        best_score = 0.0
        best: Product | None = None
        for product in products:
            if not product.active:
                continue
            name_key = normalize_supplier_name(product.name)
            if name_key == description_key:
                return ProductMatch(
                    product_id=product.id,
                    product_name=product.name,
                    confidence=EXACT_NAME_CONFIDENCE,
                    reason="exact name",
                )
            score = max(
                _ratio(description_key, name_key),
                _ratio(description_key, normalize_supplier_name(product.code or "")),
            )
            if score > best_score:
                best_score, best = score, product

        if best is None:
            return None
        confidence = round(best_score * 100)
        if confidence < self.settings.product_match_min_confidence:
            return None
        return ProductMatch(
            product_id=best.id,
            product_name=best.name,
            confidence=confidence,
            reason=f"similar name ({best_score:.2f})",
        )

    def find_match(
        self,
        session: Session,
        tenant_id: int,
        description: str,
        supplier_name: str | None = None,
        products: list[Product] | None = None,
    ) -> ProductMatch | None:
        """Find the best product for one line description.

        Args:
            session: Open session (history lookup)
            tenant_id: Owning tenant
            description: Line description as extracted
            supplier_name: Invoice supplier, narrows the history
            products: Tenant products, loaded from the catalog when omitted

        Returns:
            ProductMatch, or None when nothing is close enough

        Raises:
            CatalogError: If the products had to be loaded and the catalog failed
        """
        description_key = normalize_supplier_name(description)
        if not description_key:
            return None

        match = self._history_match(session, tenant_id, description_key, supplier_name)
        if match is not None:
            return match
        if products is None:
            products = self.gateway.list_products(tenant_id)
        return self._catalog_match(description_key, products)

    def match_lines(self, session: Session, invoice: Invoice) -> int:
        """Propose products for every unlinked line of an invoice.

        Returns:
            Number of lines that received a product

        Raises:
            CatalogError: If the catalog could not list the tenant's products
        """
        products: list[Product] | None = None
        matched = 0
        for line in invoice.lines:
            if line.product_id is not None:
                continue
            description_key = normalize_supplier_name(line.description)
            if not description_key:
                continue

            match = self._history_match(session, invoice.tenant_id, description_key, invoice.supplier_name)
            if match is None:
                if products is None:
                    products = self.gateway.list_products(invoice.tenant_id)
                match = self._catalog_match(description_key, products)
            if match is None:
                continue

            line.product_id = match.product_id
            line.match_confidence = match.confidence
            matched += 1

        if matched:
            logger.info(
                f"Invoice {invoice.id}: {matched} of {len(invoice.lines)} line(s) matched to products"
            )
        return matched

    def suggestions(self, tenant_id: int, description: str, limit: int = 10) -> list[ProductMatch]:
        """Rank active products for a reviewer picking a product by hand.

        Scores count description tokens found in the product name (50, or 25
        for a 70% prefix) and code (30), with bonuses for several tokens and
        for short names. Only scores of 60 and above are returned.
        """
        tokens = [t for t in normalize_supplier_name(description).split() if len(t) >= MIN_TOKEN_LENGTH]
        if not tokens:
            return []

        scored: list[tuple[int, Product]] = []
        for product in self.gateway.list_products(tenant_id):
            if not product.active:
                continue
            score = _token_score(
                tokens,
                normalize_supplier_name(product.name),
                normalize_supplier_name(product.code or ""),
            )
            if score >= MIN_SUGGESTION_SCORE:
                scored.append((score, product))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            ProductMatch(
                product_id=product.id,
                product_name=product.name,
                confidence=score,
                reason="strong match" if score >= STRONG_SUGGESTION else "possible match",
            )
            for score, product in scored[:limit]
        ]
