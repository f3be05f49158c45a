"""Integration log: push purchase costs of an approved invoice into the catalog.

Runs once per approval. Lines linked to a catalog product set that product's
cost per base unit; the change then cascades breadth-first to the recipes
that use the product (directly or through sub-recipes) and to the menu items
priced on those products and recipes. Each applied change is written as one
IntegrationLogItem under a single IntegrationLog for the invoice.

The run is additive and best effort. A failing catalog call is logged, the
affected entity is skipped and the log ends as `partial`; nothing here ever
blocks or reverses an approval.
"""

import logging
from collections import deque
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from invoicing.integration.catalog import CatalogGateway, MenuItem, Recipe, RecipeIngredient
from invoicing.shared.db import session_scope, utcnow
from invoicing.shared.errors import CatalogError, InvalidTransitionError
from invoicing.shared.metrics import integration_log_items_total
from invoicing.store.invoices import InvoiceRepository
from invoicing.store.models import (
    IntegrationLog,
    IntegrationLogItem,
    InvoiceLine,
    InvoiceStatus,
)

logger = logging.getLogger(__name__)

COST_EPSILON = Decimal("0.0001")
COST_QUANTUM = Decimal("0.0001")
MARGIN_QUANTUM = Decimal("0.01")
MAX_RECIPE_PASSES = 10


class IntegrationSummary(BaseModel):
    """Outcome of one integration run."""

    log_id: int
    status: str
    items: int
    failures: int


def purchases_by_product(lines: list[InvoiceLine]) -> dict[int, tuple[Decimal, Decimal]]:
    """Sum net totals and quantities of the product-linked lines.

    Lines without a product, a positive quantity or a positive total carry no
    usable cost and are ignored.

    Returns:
        Mapping of product id to (total net, total quantity)
    """
    purchases: dict[int, tuple[Decimal, Decimal]] = {}
    for line in lines:
        if line.product_id is None or not line.quantity or not line.line_total:
            continue
        if line.quantity <= 0 or line.line_total <= 0:
            continue
        total, quantity = purchases.get(line.product_id, (Decimal("0"), Decimal("0")))
        purchases[line.product_id] = (total + line.line_total, quantity + line.quantity)
    return purchases


def menu_margin(price: Decimal, cost: Decimal) -> Decimal:
    """Gross margin as a percentage of the sale price."""
    if price <= 0:
        return Decimal("0")
    return ((price - cost) / price * 100).quantize(MARGIN_QUANTUM)


class _CascadeRun:
    """State of one cascade: known costs, changed entities, log items."""

    def __init__(self, gateway: CatalogGateway, session: Session, log: IntegrationLog) -> None:
        self.gateway = gateway
        self.session = session
        self.log = log
        self.tenant_id = log.tenant_id
        self.product_costs: dict[int, Decimal] = {}
        self.recipe_costs: dict[int, Decimal] = {}
        self.changed_products: list[int] = []
        self.changed_recipes: list[int] = []
        self.items = 0
        self.failures = 0

    def _record(
        self,
        entity_type: str,
        entity_id: int,
        entity_name: str,
        field: str,
        old_value: Decimal,
        new_value: Decimal,
    ) -> None:
        self.session.add(
            IntegrationLogItem(
                log_id=self.log.id,
                tenant_id=self.tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                entity_name=entity_name,
                field_changed=field,
                old_value=old_value,
                new_value=new_value,
            )
        )
        self.items += 1
        integration_log_items_total.labels(entity_type=entity_type).inc()
        logger.info(f"[Integration] {entity_type} {entity_id} {field}: {old_value} -> {new_value}")

    def apply_purchases(self, purchases: dict[int, tuple[Decimal, Decimal]]) -> None:
        for product_id, (total, quantity) in purchases.items():
            try:
                product = self.gateway.get_product(self.tenant_id, product_id)
                if product is None:
                    raise CatalogError(f"product {product_id} not found")
                divisor = quantity * product.units_per_purchase * product.volume_per_unit
                if divisor <= 0:
                    logger.warning(f"[Integration] Product {product_id} has no usable unit size; skipped")
                    continue
                new_cost = (total / divisor).quantize(COST_QUANTUM)
                self.product_costs[product_id] = product.cost
                if abs(new_cost - product.cost) < COST_EPSILON:
                    continue
                self.gateway.update_product_cost(self.tenant_id, product_id, new_cost)
            except CatalogError:
                logger.exception(f"[Integration] Cost update for product {product_id} failed")
                self.failures += 1
                continue

            self.product_costs[product_id] = new_cost
            self.changed_products.append(product_id)
            self._record("product", product.id, product.name, "cost", product.cost, new_cost)

    def _unit_cost(self, ingredient: RecipeIngredient) -> Decimal:
        if ingredient.kind == "product":
            if ingredient.ref_id not in self.product_costs:
                product = self.gateway.get_product(self.tenant_id, ingredient.ref_id)
                if product is None:
                    raise CatalogError(f"product {ingredient.ref_id} not found")
                self.product_costs[ingredient.ref_id] = product.cost
            return self.product_costs[ingredient.ref_id]

        if ingredient.ref_id not in self.recipe_costs:
            recipe = self.gateway.get_recipe(self.tenant_id, ingredient.ref_id)
            if recipe is None:
                raise CatalogError(f"recipe {ingredient.ref_id} not found")
            self.recipe_costs[ingredient.ref_id] = recipe.cost_per_portion
        return self.recipe_costs[ingredient.ref_id]

    def _recalculate(self, recipe: Recipe) -> bool:
        """Recompute one recipe's cost per portion; True if it changed."""
        old_cost = self.recipe_costs.get(recipe.id, recipe.cost_per_portion)
        total = sum(
            (self._unit_cost(ingredient) * ingredient.quantity for ingredient in recipe.ingredients),
            Decimal("0"),
        )
        portions = recipe.portions if recipe.portions > 0 else Decimal("1")
        new_cost = (total / portions).quantize(COST_QUANTUM)
        self.recipe_costs[recipe.id] = old_cost
        if abs(new_cost - old_cost) < COST_EPSILON:
            return False

        self.gateway.update_recipe_cost(self.tenant_id, recipe.id, new_cost)
        self.recipe_costs[recipe.id] = new_cost
        if recipe.id not in self.changed_recipes:
            self.changed_recipes.append(recipe.id)
        self._record("recipe", recipe.id, recipe.name, "cost_per_portion", old_cost, new_cost)
        return True

    def cascade_recipes(self) -> None:
        """Breadth-first: direct recipes first, then recipes using those as sub-recipes."""
        queue: deque[Recipe] = deque()
        for product_id in self.changed_products:
            try:
                queue.extend(self.gateway.recipes_using_product(self.tenant_id, product_id))
            except CatalogError:
                logger.exception(f"[Integration] Listing recipes of product {product_id} failed")
                self.failures += 1

        passes: dict[int, int] = {}
        while queue:
            recipe = queue.popleft()
            passes[recipe.id] = passes.get(recipe.id, 0) + 1
            if passes[recipe.id] > MAX_RECIPE_PASSES:
                logger.warning(f"[Integration] Recipe {recipe.id} revisited too often; cycle suspected")
                continue
            try:
                if self._recalculate(recipe):
                    queue.extend(self.gateway.recipes_using_recipe(self.tenant_id, recipe.id))
            except CatalogError:
                logger.exception(f"[Integration] Recalculation of recipe {recipe.id} failed")
                self.failures += 1

    def _reprice(self, item: MenuItem, unit_cost: Decimal) -> None:
        new_cost = (unit_cost * item.quantity).quantize(COST_QUANTUM)
        if abs(new_cost - item.cost) < COST_EPSILON:
            return
        new_margin = menu_margin(item.price, new_cost)
        self.gateway.update_menu_item(self.tenant_id, item.id, new_cost, new_margin)
        self._record("menu_item", item.id, item.name, "cost", item.cost, new_cost)
        if new_margin != item.margin:
            self._record("menu_item", item.id, item.name, "margin", item.margin, new_margin)

    def cascade_menu_items(self) -> None:
        sources = [("recipe", recipe_id, self.recipe_costs[recipe_id]) for recipe_id in self.changed_recipes]
        sources += [
            ("product", product_id, self.product_costs[product_id]) for product_id in self.changed_products
        ]
        for kind, source_id, unit_cost in sources:
            try:
                if kind == "recipe":
                    items = self.gateway.menu_items_for_recipe(self.tenant_id, source_id)
                else:
                    items = self.gateway.menu_items_for_product(self.tenant_id, source_id)
            except CatalogError:
                logger.exception(f"[Integration] Listing menu items of {kind} {source_id} failed")
                self.failures += 1
                continue

            for item in items:
                try:
                    self._reprice(item, unit_cost)
                except CatalogError:
                    logger.exception(f"[Integration] Repricing menu item {item.id} failed")
                    self.failures += 1


class IntegrationService:
    """Applies an approved invoice's purchase costs to the catalog."""

    def __init__(self, session_factory: sessionmaker[Session], gateway: CatalogGateway) -> None:
        self.session_factory = session_factory
        self.gateway = gateway

    def apply_approved_invoice(
        self, invoice_id: int, tenant_id: int, user_id: int | None = None
    ) -> IntegrationSummary:
        """Run the cost cascade for one approved invoice.

        Args:
            invoice_id: Approved invoice
            tenant_id: Owning tenant
            user_id: Approving user, recorded on the log

        Returns:
            IntegrationSummary with the log id, status and change count

        Raises:
            InvalidTransitionError: If the invoice is missing or not approved
        """
        with session_scope(self.session_factory) as session:
            invoice = InvoiceRepository(session).get(invoice_id, tenant_id)
            if invoice is None or invoice.status != InvoiceStatus.APPROVED.value:
                raise InvalidTransitionError(
                    f"Invoice {invoice_id} must be approved before catalog integration"
                )

            log = IntegrationLog(
                tenant_id=tenant_id, invoice_id=invoice_id, user_id=user_id, status="processing"
            )
            session.add(log)
            session.flush()

            run = _CascadeRun(self.gateway, session, log)
            run.apply_purchases(purchases_by_product(invoice.lines))
            run.cascade_recipes()
            run.cascade_menu_items()

            log.status = "partial" if run.failures else "completed"
            log.completed_at = utcnow()
            session.flush()

            logger.info(
                f"[Integration] Invoice {invoice_id}: {run.items} change(s), "
                f"{run.failures} failure(s), status {log.status}"
            )
            return IntegrationSummary(
                log_id=log.id, status=log.status, items=run.items, failures=run.failures
            )
