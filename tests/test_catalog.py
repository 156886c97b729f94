"""
Tests for the admin product catalog.
"""
import re
import uuid
from decimal import Decimal
from typing import Any, Dict

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from core.catalog import (
    CatalogService,
    ProductCategory,
    ProductDetails,
    StockStatus,
    build_variants,
    discounted_price,
    generate_sku,
    slugify,
    stock_status,
    total_stock,
)
from core.exceptions import NotFound, ValidationError
from database.repository import ProductFilters


def _details(**overrides: Any) -> ProductDetails:
    fields: Dict[str, Any] = dict(
        name="Classic Tee",
        description="Heavyweight cotton tee",
        price=Decimal("450"),
        category=ProductCategory.TSHIRTS,
        colors=({"name": "Black", "hex": "#000000"}, {"name": "White"}),
        sizes=({"size": "M", "stock": 20}, {"size": "L", "stock": 5}),
        material="Organic cotton",
    )
    fields.update(overrides)
    return ProductDetails(**fields)


class TestCatalogHelpers:
    """Pure derivations: slugs, SKUs, stock and pricing."""

    @pytest.mark.unit
    def test_slugify(self) -> None:
        assert slugify("  Classic Tee (Black) ") == "classic-tee-black"
        assert slugify("Über--Hoodie!!") == "ber-hoodie"
        assert slugify("!!!") == ""

    @pytest.mark.unit
    def test_sku_format(self) -> None:
        sku = generate_sku("Classic Tee", "Black", "m")

        assert re.fullmatch(r"CLA-BL-M-\d{4}", sku)
        assert generate_sku("X", None, "L").startswith("X-NA-L-")

    @pytest.mark.unit
    def test_variants_cover_every_size_and_color(self) -> None:
        variants = build_variants(
            "Classic Tee",
            [{"name": "Black"}, {"name": "White"}],
            [{"size": "M"}, {"size": "L", "available": False}],
        )

        assert {(v["size"], v["color"]) for v in variants} == {
            ("M", "Black"),
            ("M", "White"),
            ("L", "Black"),
            ("L", "White"),
        }
        assert all(not v["available"] for v in variants if v["size"] == "L")

    @pytest.mark.unit
    def test_variants_without_colors(self) -> None:
        variants = build_variants("Cap", [], [{"size": "OS"}])

        assert len(variants) == 1
        assert variants[0]["color"] is None

    @pytest.mark.unit
    def test_stock_is_sum_of_sizes(self) -> None:
        assert total_stock([{"stock": 20}, {"stock": 5}, {}]) == 25

    @pytest.mark.unit
    def test_stock_status(self) -> None:
        assert stock_status(0, 10) == StockStatus.OUT_OF_STOCK
        assert stock_status(10, 10) == StockStatus.LOW_STOCK
        assert stock_status(11, 10) == StockStatus.IN_STOCK

    @pytest.mark.unit
    def test_discounted_price(self) -> None:
        assert discounted_price(Decimal("999"), Decimal("10")) == Decimal("899.10")
        assert discounted_price(Decimal("450"), Decimal("0")) == Decimal("450.00")

    @pytest.mark.unit
    def test_details_reject_bad_values(self) -> None:
        with pytest.raises(ValidationError):
            _details(name="   ")
        with pytest.raises(ValidationError):
            _details(price=Decimal("-1"))
        with pytest.raises(ValidationError):
            _details(discount=Decimal("101"))


class TestCatalogService:
    """Catalog writes against the database."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_derives_slug_stock_and_variants(self, test_db: AsyncSession) -> None:
        product = await CatalogService(test_db).create_product(_details(), "admin")

        assert product.slug == "classic-tee"
        assert product.stock == 25
        assert len(product.variants) == 4
        assert product.colors[1]["hex"] == "#000000"
        assert product.meta_title == "Classic Tee"
        assert product.keywords == ["classic", "tee", "tshirts", "organic", "cotton"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_slug_rejected(self, test_db: AsyncSession) -> None:
        service = CatalogService(test_db)
        await service.create_product(_details(), "admin")

        with pytest.raises(ValidationError) as exc_info:
            await service.create_product(_details(name="classic tee!"), "admin")

        assert exc_info.value.errors[0]["field"] == "name"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_update_recomputes_derived_fields(self, test_db: AsyncSession) -> None:
        service = CatalogService(test_db)
        product = await service.create_product(_details(), "admin")

        updated = await service.update_product(
            product.id,
            {"name": "Classic Tee V2", "sizes": [{"size": "S", "stock": 3}]},
            "admin",
        )

        assert updated.slug == "classic-tee-v2"
        assert updated.stock == 3
        assert {(v["size"], v["color"]) for v in updated.variants} == {
            ("S", "Black"),
            ("S", "White"),
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_update_rejects_derived_fields(self, test_db: AsyncSession) -> None:
        service = CatalogService(test_db)
        product = await service.create_product(_details(), "admin")

        with pytest.raises(ValidationError):
            await service.update_product(product.id, {"stock": 999}, "admin")

        await test_db.refresh(product)
        assert product.stock == 25

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rename_onto_existing_slug_rejected(self, test_db: AsyncSession) -> None:
        service = CatalogService(test_db)
        await service.create_product(_details(), "admin")
        hoodie = await service.create_product(
            _details(name="Zip Hoodie", category=ProductCategory.HOODIES), "admin"
        )

        with pytest.raises(ValidationError):
            await service.update_product(hoodie.id, {"name": "Classic Tee"}, "admin")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_delete(self, test_db: AsyncSession) -> None:
        service = CatalogService(test_db)
        product = await service.create_product(_details(), "admin")

        await service.delete_product(product.id, "admin")

        with pytest.raises(NotFound):
            await service.get_product(product.id)
        with pytest.raises(NotFound):
            await service.delete_product(uuid.uuid4(), "admin")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_filters(self, test_db: AsyncSession) -> None:
        service = CatalogService(test_db)
        await service.create_product(_details(), "admin")
        await service.create_product(
            _details(
                name="Zip Hoodie",
                category=ProductCategory.HOODIES,
                sizes=({"size": "M", "stock": 4},),
                is_featured=True,
            ),
            "admin",
        )
        await service.create_product(
            _details(name="Cargo Pants", category=ProductCategory.PANTS, sizes=(), is_active=False),
            "admin",
        )

        async def slugs(**filters: Any) -> set:
            listing = await service.list_products(ProductFilters(**filters))
            return {p.slug for p in listing.products}

        assert await slugs() == {"classic-tee", "zip-hoodie", "cargo-pants"}
        assert await slugs(search="HOOD") == {"zip-hoodie"}
        assert await slugs(category="pants") == {"cargo-pants"}
        assert await slugs(status="featured") == {"zip-hoodie"}
        assert await slugs(status="inactive") == {"cargo-pants"}
        assert await slugs(status="low-stock") == {"zip-hoodie"}
        assert await slugs(status="out-of-stock") == {"cargo-pants"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_pagination(self, test_db: AsyncSession) -> None:
        service = CatalogService(test_db)
        for name in ("Tee One", "Tee Two", "Tee Three"):
            await service.create_product(_details(name=name), "admin")

        listing = await service.list_products(ProductFilters(), page=2, limit=2)

        assert listing.total == 3
        assert listing.pages == 2
        assert len(listing.products) == 1
