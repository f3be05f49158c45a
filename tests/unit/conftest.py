"""Shared fixtures: settings, a SQLite database per test, fake AI provider and catalog."""

from collections.abc import Iterator
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from invoicing.extraction.base import AIExtraction, ExtractionProvider
from invoicing.extraction.fallback import AIFallbackExtractor
from invoicing.extraction.schema import ExtractedLine, InvoiceHeader
from invoicing.extraction.zones import infer_zone_config
from invoicing.integration.catalog import CatalogGateway, MenuItem, Product, Recipe
from invoicing.matching.fingerprint import compute_fingerprint
from invoicing.queue.base import InMemoryJobQueue
from invoicing.shared.config import Settings
from invoicing.shared.db import create_db_engine, create_session_factory, init_db, session_scope
from invoicing.shared.errors import CatalogError
from invoicing.store.invoices import InvoiceRepository
from invoicing.store.models import Invoice, ProcessingMetric, Template
from invoicing.store.templates import TemplateStore

SUPPLIER_TAX_ID = "501234567"

SAMPLE_OCR = """MOAGEM CENTRAL LDA
Rua do Trigo 12
4000-123 PORTO NIF: 501234567
FATURA FT 2024/123
Data: 15/03/2024
DESCRICAO QTD UN PRECO VALOR
Flour 25kg 2 UN 19,60 39,20
Sugar 1kg 10 KG 1,20 12,00
Sunflower Oil 5L 3 UN 8,50 25,50
TOTAL SEM IVA: 76,70
TOTAL IVA: 4,60
TOTAL A PAGAR: 81,30
"""

# Same supplier and layout, next month, different quantities
SECOND_OCR = """MOAGEM CENTRAL LDA
Rua do Trigo 12
4000-123 PORTO NIF: 501234567
FATURA FT 2024/187
Data: 16/04/2024
DESCRICAO QTD UN PRECO VALOR
Flour 25kg 4 UN 19,60 78,40
Sugar 1kg 5 KG 1,20 6,00
Sunflower Oil 5L 1 UN 8,50 8,50
TOTAL SEM IVA: 92,90
TOTAL IVA: 5,57
TOTAL A PAGAR: 98,47
"""

UNKNOWN_SUPPLIER_OCR = """PADARIA ESTRELA UNIPESSOAL
Avenida Central 5
1000-001 LISBOA NIF: 287654321
FATURA FT A/55
Data: 02/05/2024
ARTIGO QTD PRECO VALOR
Pao de Forma 12 1,10 13,20
TOTAL SEM IVA: 13,20
TOTAL IVA: 0,79
TOTAL A PAGAR: 13,99
"""


def sample_header() -> InvoiceHeader:
    return InvoiceHeader(
        supplier_name="MOAGEM CENTRAL LDA",
        supplier_tax_id=SUPPLIER_TAX_ID,
        invoice_number="2024/123",
        total_net=Decimal("76.70"),
        total_tax=Decimal("4.60"),
        total_gross=Decimal("81.30"),
    )


def sample_lines() -> list[ExtractedLine]:
    return [
        ExtractedLine(
            line_number=1,
            description="Flour 25kg",
            quantity=Decimal("2"),
            unit="UN",
            unit_price=Decimal("19.60"),
            line_total=Decimal("39.20"),
        ),
        ExtractedLine(
            line_number=2,
            description="Sugar 1kg",
            quantity=Decimal("10"),
            unit="KG",
            unit_price=Decimal("1.20"),
            line_total=Decimal("12.00"),
        ),
        ExtractedLine(
            line_number=3,
            description="Sunflower Oil 5L",
            quantity=Decimal("3"),
            unit="UN",
            unit_price=Decimal("8.50"),
            line_total=Decimal("25.50"),
        ),
    ]


class FakeProvider(ExtractionProvider):
    """Scripted provider: each call pops the next outcome (exception or extraction)."""

    def __init__(self, settings: Settings, outcomes: list[object] | None = None) -> None:
        super().__init__(settings)
        self.outcomes = list(outcomes or [])
        self.calls = 0

    @property
    def provider_name(self) -> str:
        return "fake"

    @property
    def model_name(self) -> str:
        return "fake-model-1"

    def is_available(self) -> bool:
        return True

    def extract_invoice(self, ocr_text: str) -> AIExtraction:
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else self.default()
        if isinstance(outcome, Exception):
            raise outcome
        assert isinstance(outcome, AIExtraction)
        return outcome

    def default(self) -> AIExtraction:
        return AIExtraction(header=sample_header(), lines=sample_lines(), model="fake-model-1")


class FakeCatalog(CatalogGateway):
    """In-memory catalog that applies updates and can fail on chosen calls."""

    def __init__(self) -> None:
        self.products: dict[int, Product] = {}
        self.recipes: dict[int, Recipe] = {}
        self.menu_items: dict[int, MenuItem] = {}
        self.fail_product_updates: set[int] = set()
        self.product_listings = 0
        self.fail_listing = False

    def list_products(self, tenant_id: int) -> list[Product]:
        self.product_listings += 1
        if self.fail_listing:
            raise CatalogError("GET /products failed: connection refused")
        return list(self.products.values())

    def get_product(self, tenant_id: int, product_id: int) -> Product | None:
        return self.products.get(product_id)

    def update_product_cost(self, tenant_id: int, product_id: int, cost: Decimal) -> None:
        if product_id in self.fail_product_updates:
            raise CatalogError(f"PATCH /products/{product_id} returned HTTP 500")
        self.products[product_id] = self.products[product_id].model_copy(update={"cost": cost})

    def get_recipe(self, tenant_id: int, recipe_id: int) -> Recipe | None:
        return self.recipes.get(recipe_id)

    def _using(self, kind: str, ref_id: int) -> list[Recipe]:
        return [
            recipe
            for recipe in self.recipes.values()
            if any(i.kind == kind and i.ref_id == ref_id for i in recipe.ingredients)
        ]

    def recipes_using_product(self, tenant_id: int, product_id: int) -> list[Recipe]:
        return self._using("product", product_id)

    def recipes_using_recipe(self, tenant_id: int, recipe_id: int) -> list[Recipe]:
        return self._using("recipe", recipe_id)

    def update_recipe_cost(self, tenant_id: int, recipe_id: int, cost_per_portion: Decimal) -> None:
        self.recipes[recipe_id] = self.recipes[recipe_id].model_copy(
            update={"cost_per_portion": cost_per_portion}
        )

    def menu_items_for_recipe(self, tenant_id: int, recipe_id: int) -> list[MenuItem]:
        return [item for item in self.menu_items.values() if item.recipe_id == recipe_id]

    def menu_items_for_product(self, tenant_id: int, product_id: int) -> list[MenuItem]:
        return [item for item in self.menu_items.values() if item.product_id == product_id]

    def update_menu_item(self, tenant_id: int, item_id: int, cost: Decimal, margin: Decimal) -> None:
        self.menu_items[item_id] = self.menu_items[item_id].model_copy(
            update={"cost": cost, "margin": margin}
        )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create test settings with zero AI backoff and a per-test database."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'invoices.db'}",
        storage_local_root=str(tmp_path / "uploads"),
        ai_max_attempts=3,
        ai_retry_initial_wait=0,
        ai_retry_max_wait=0,
    )


@pytest.fixture
def session_factory(settings: Settings) -> Iterator[sessionmaker[Session]]:
    """Create a fresh SQLite schema for the test."""
    engine = create_db_engine(settings)
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def provider(settings: Settings) -> FakeProvider:
    return FakeProvider(settings)


@pytest.fixture
def fallback(provider: FakeProvider, settings: Settings) -> AIFallbackExtractor:
    return AIFallbackExtractor(provider, settings)


@pytest.fixture
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def make_invoice(session_factory: sessionmaker[Session]):  # type: ignore[no-untyped-def]
    """Factory that inserts a pending invoice and returns its id."""

    def _make(ocr_text: str | None = SAMPLE_OCR, tenant_id: int = 1, file_type: str = "application/pdf") -> int:
        with session_scope(session_factory) as session:
            invoice = InvoiceRepository(session).create(
                tenant_id=tenant_id,
                file_name="fatura.pdf",
                file_type=file_type,
                storage_ref=f"development/tenant_{tenant_id}/fatura_1.pdf",
                ocr_text=ocr_text,
            )
            return invoice.id

    return _make


def create_learned_template(
    session_factory: sessionmaker[Session],
    tenant_id: int = 1,
    times_used: int | None = None,
    times_successful: int | None = None,
) -> int:
    """Insert the template learned from SAMPLE_OCR, optionally overriding its counters."""
    fingerprint = compute_fingerprint(SAMPLE_OCR, sample_header())
    zone_config = infer_zone_config(SAMPLE_OCR, sample_lines())
    assert zone_config is not None

    with session_scope(session_factory) as session:
        template = TemplateStore(session).create_template(
            tenant_id=tenant_id,
            supplier_name="MOAGEM CENTRAL LDA",
            supplier_tax_id=SUPPLIER_TAX_ID,
            family=fingerprint.family,
            fingerprint=fingerprint.model_dump(mode="json"),
            zone_config=zone_config.model_dump(mode="json"),
        )
        template_id = template.id
        if times_used is not None and times_successful is not None:
            session.execute(
                update(Template)
                .where(Template.id == template_id)
                .values(
                    times_used=times_used,
                    times_successful=times_successful,
                    confidence_score=100.0 * times_successful / times_used,
                )
            )
    return template_id


def load_template(session_factory: sessionmaker[Session], template_id: int) -> Template:
    with session_scope(session_factory) as session:
        template = session.get(Template, template_id)
        assert template is not None
        return template


def load_invoice(session_factory: sessionmaker[Session], invoice_id: int) -> Invoice:
    """Read an invoice with its lines loaded, detached from the session."""
    with session_scope(session_factory) as session:
        invoice = session.get(Invoice, invoice_id)
        assert invoice is not None
        invoice.lines  # noqa: B018
        return invoice


def load_metrics(session_factory: sessionmaker[Session], invoice_id: int) -> list[ProcessingMetric]:
    with session_scope(session_factory) as session:
        return InvoiceRepository(session).metrics_for(invoice_id)
