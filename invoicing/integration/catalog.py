"""Gateway to the catalog subsystem (products, recipes, menu items).

The catalog is owned by another service. The pipeline only reads the
entities affected by an approved invoice and applies single-field changes;
every call either succeeds or raises CatalogError.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from invoicing.shared.config import Settings
from invoicing.shared.errors import CatalogError

logger = logging.getLogger(__name__)


class Product(BaseModel):
    """A purchasable product.

    Attributes:
        id: Catalog product id
        name: Display name
        cost: Current cost per base unit (kg, L or unit)
        units_per_purchase: Base units contained in one purchased unit
        volume_per_unit: Volume or weight per base unit, for packaged goods
        code: Internal product code
        active: Whether the product can still be purchased
    """

    id: int
    name: str
    cost: Decimal
    units_per_purchase: Decimal = Decimal("1")
    volume_per_unit: Decimal = Decimal("1")
    code: str | None = None
    active: bool = True


class RecipeIngredient(BaseModel):
    kind: Literal["product", "recipe"]
    ref_id: int
    quantity: Decimal


class Recipe(BaseModel):
    """A recipe whose ingredients are products or other (sub-)recipes."""

    id: int
    name: str
    portions: Decimal = Decimal("1")
    cost_per_portion: Decimal
    ingredients: list[RecipeIngredient] = Field(default_factory=list)


class MenuItem(BaseModel):
    """A sold item priced on top of a recipe or a product."""

    id: int
    name: str
    price: Decimal
    cost: Decimal
    margin: Decimal
    recipe_id: int | None = None
    product_id: int | None = None
    quantity: Decimal = Decimal("1")


class CatalogGateway(ABC):
    """Catalog reads and updates used by product matching and the cost cascade."""

    @abstractmethod
    def list_products(self, tenant_id: int) -> list[Product]:
        """All products of the tenant (used to match invoice lines)."""

    @abstractmethod
    def get_product(self, tenant_id: int, product_id: int) -> Product | None:
        pass

    @abstractmethod
    def update_product_cost(self, tenant_id: int, product_id: int, cost: Decimal) -> None:
        pass

    @abstractmethod
    def get_recipe(self, tenant_id: int, recipe_id: int) -> Recipe | None:
        pass

    @abstractmethod
    def recipes_using_product(self, tenant_id: int, product_id: int) -> list[Recipe]:
        pass

    @abstractmethod
    def recipes_using_recipe(self, tenant_id: int, recipe_id: int) -> list[Recipe]:
        """Recipes that use the given recipe as a sub-recipe."""

    @abstractmethod
    def update_recipe_cost(self, tenant_id: int, recipe_id: int, cost_per_portion: Decimal) -> None:
        pass

    @abstractmethod
    def menu_items_for_recipe(self, tenant_id: int, recipe_id: int) -> list[MenuItem]:
        pass

    @abstractmethod
    def menu_items_for_product(self, tenant_id: int, product_id: int) -> list[MenuItem]:
        pass

    @abstractmethod
    def update_menu_item(self, tenant_id: int, item_id: int, cost: Decimal, margin: Decimal) -> None:
        pass


class HttpCatalogGateway(CatalogGateway):
    """CatalogGateway over the catalog service's JSON HTTP API."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        """Initialize the gateway.

        Args:
            settings: Application settings (catalog_base_url, catalog_timeout)
            client: Optional preconfigured httpx client
        """
        self._client = client or httpx.Client(
            base_url=settings.catalog_base_url, timeout=settings.catalog_timeout
        )

    def _request(self, method: str, path: str, tenant_id: int, **kwargs: Any) -> Any:
        try:
            response = self._client.request(
                method, path, headers={"X-Tenant-Id": str(tenant_id)}, **kwargs
            )
        except httpx.HTTPError as e:
            raise CatalogError(f"{method} {path} failed: {e}") from e

        if method == "GET" and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise CatalogError(f"{method} {path} returned HTTP {response.status_code}")
        if not response.content:
            return None
        return response.json()

    def list_products(self, tenant_id: int) -> list[Product]:
        data = self._request("GET", "/products", tenant_id)
        return [Product.model_validate(item) for item in data or []]

    def get_product(self, tenant_id: int, product_id: int) -> Product | None:
        data = self._request("GET", f"/products/{product_id}", tenant_id)
        return Product.model_validate(data) if data else None

    def update_product_cost(self, tenant_id: int, product_id: int, cost: Decimal) -> None:
        self._request("PATCH", f"/products/{product_id}", tenant_id, json={"cost": str(cost)})

    def get_recipe(self, tenant_id: int, recipe_id: int) -> Recipe | None:
        data = self._request("GET", f"/recipes/{recipe_id}", tenant_id)
        return Recipe.model_validate(data) if data else None

    def recipes_using_product(self, tenant_id: int, product_id: int) -> list[Recipe]:
        data = self._request("GET", "/recipes", tenant_id, params={"product_id": product_id})
        return [Recipe.model_validate(item) for item in data or []]

    def recipes_using_recipe(self, tenant_id: int, recipe_id: int) -> list[Recipe]:
        data = self._request("GET", "/recipes", tenant_id, params={"sub_recipe_id": recipe_id})
        return [Recipe.model_validate(item) for item in data or []]

    def update_recipe_cost(self, tenant_id: int, recipe_id: int, cost_per_portion: Decimal) -> None:
        self._request(
            "PATCH",
            f"/recipes/{recipe_id}",
            tenant_id,
            json={"cost_per_portion": str(cost_per_portion)},
        )

    def menu_items_for_recipe(self, tenant_id: int, recipe_id: int) -> list[MenuItem]:
        data = self._request("GET", "/menu-items", tenant_id, params={"recipe_id": recipe_id})
        return [MenuItem.model_validate(item) for item in data or []]

    def menu_items_for_product(self, tenant_id: int, product_id: int) -> list[MenuItem]:
        data = self._request("GET", "/menu-items", tenant_id, params={"product_id": product_id})
        return [MenuItem.model_validate(item) for item in data or []]

    def update_menu_item(self, tenant_id: int, item_id: int, cost: Decimal, margin: Decimal) -> None:
        self._request(
            "PATCH",
            f"/menu-items/{item_id}",
            tenant_id,
            json={"cost": str(cost), "margin": str(margin)},
        )

    def close(self) -> None:
        self._client.close()
