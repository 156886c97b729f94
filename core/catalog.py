"""
Product catalog.

Admin-managed products with pricing, size/color variants and stock. Stock
is tracked per size; every size/color combination gets its own SKU. A
product's slug is derived from its name and is unique across the catalog.
"""
import math
import re
import secrets
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import NotFound, ValidationError
from core.pricing import quantize
from database.models import Product
from database.repository import ProductFilters, ProductRepository
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_COLOR_HEX = "#000000"
DEFAULT_LOW_STOCK_THRESHOLD = 10
META_DESCRIPTION_LENGTH = 160

# Fields an admin update may write; identity, slug and stock are derived
UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "price",
        "original_price",
        "discount",
        "category",
        "subcategory",
        "material",
        "colors",
        "sizes",
        "images",
        "care_instructions",
        "features",
        "low_stock_threshold",
        "is_active",
        "is_featured",
        "is_new",
    }
)


class ProductCategory(str, Enum):
    TSHIRTS = "tshirts"
    HOODIES = "hoodies"
    SWEATSHIRTS = "sweatshirts"
    PANTS = "pants"
    ACCESSORIES = "accessories"


class StockStatus(str, Enum):
    IN_STOCK = "in-stock"
    LOW_STOCK = "low-stock"
    OUT_OF_STOCK = "out-of-stock"


class ListingStatus(str, Enum):
    """Admin listing filter."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    FEATURED = "featured"
    NEW = "new"
    LOW_STOCK = "low-stock"
    OUT_OF_STOCK = "out-of-stock"


def slugify(name: str) -> str:
    """Lowercase, ASCII letters and digits joined by single hyphens."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def generate_sku(name: str, color: Optional[str], size: str) -> str:
    """
    SKU for one size/color variant, e.g. ``CLA-BL-M-4821``.

    The trailing four digits are random; uniqueness is not guaranteed and
    the variant list is regenerated whenever sizes or colors change.
    """
    prefix = re.sub(r"[^A-Za-z0-9]", "", name)[:3].upper() or "PRD"
    color_code = (color or "NA")[:2].upper()
    return f"{prefix}-{color_code}-{size.upper()}-{1000 + secrets.randbelow(9000)}"


def build_variants(
    name: str, colors: Sequence[Dict[str, Any]], sizes: Sequence[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """One variant per size and color; a product without colors has one per size."""
    color_names: List[Optional[str]] = [c["name"] for c in colors] or [None]
    return [
        {
            "size": size["size"],
            "color": color,
            "available": size.get("available", True),
            "sku": generate_sku(name, color, size["size"]),
        }
        for size in sizes
        for color in color_names
    ]


def total_stock(sizes: Sequence[Dict[str, Any]]) -> int:
    return sum(int(size.get("stock") or 0) for size in sizes)


def discounted_price(price: Decimal, discount: Decimal) -> Decimal:
    if discount <= 0:
        return quantize(price)
    return quantize(price - price * discount / Decimal("100"))


def stock_status(stock: int, low_stock_threshold: int) -> StockStatus:
    if stock <= 0:
        return StockStatus.OUT_OF_STOCK
    if stock <= low_stock_threshold:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


def _normalize_colors(colors: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "name": color["name"],
            "hex": color.get("hex") or DEFAULT_COLOR_HEX,
            "available": color.get("available", True),
        }
        for color in colors
    ]


def _normalize_sizes(sizes: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "size": size["size"],
            "available": size.get("available", True),
            "stock": int(size.get("stock") or 0),
        }
        for size in sizes
    ]


def _keywords(name: str, category: str, material: Optional[str]) -> List[str]:
    words = name.split() + [category] + (material.split() if material else [])
    return list(dict.fromkeys(w.lower() for w in words))


@dataclass(frozen=True)
class ProductDetails:
    """Everything an admin supplies when creating a product."""

    name: str
    description: str
    price: Decimal
    category: ProductCategory
    original_price: Optional[Decimal] = None
    discount: Decimal = Decimal("0")
    subcategory: Optional[str] = None
    material: Optional[str] = None
    colors: Tuple[Dict[str, Any], ...] = ()
    sizes: Tuple[Dict[str, Any], ...] = ()
    images: Tuple[Dict[str, Any], ...] = ()
    care_instructions: Tuple[str, ...] = ()
    features: Tuple[str, ...] = ()
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    is_active: bool = True
    is_featured: bool = False
    is_new: bool = False

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValidationError.for_field("name", "Product name is required")
        if not slugify(self.name):
            raise ValidationError.for_field("name", "Product name must contain letters or digits")
        if self.price < 0:
            raise ValidationError.for_field("price", "Price cannot be negative")
        if not Decimal("0") <= self.discount <= Decimal("100"):
            raise ValidationError.for_field("discount", "Discount must be between 0 and 100")


@dataclass
class ProductPage:
    products: List[Product]
    total: int
    page: int
    limit: int
    pages: int = field(init=False)

    def __post_init__(self) -> None:
        self.pages = math.ceil(self.total / self.limit) if self.total else 0


class CatalogService:
    """Admin operations on the product catalog."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = ProductRepository(db)

    async def _ensure_slug_free(self, slug: str, exclude_id: Optional[uuid.UUID] = None) -> None:
        if await self.repo.slug_taken(slug, exclude_id):
            raise ValidationError.for_field("name", f"A product with slug '{slug}' already exists")

    async def _commit(self, slug: str) -> None:
        try:
            await self.db.commit()
        except IntegrityError as e:
            # Lost a race with another admin creating the same slug
            await self.db.rollback()
            raise ValidationError.for_field(
                "name", f"A product with slug '{slug}' already exists"
            ) from e

    async def get_product(self, product_id: uuid.UUID) -> Product:
        product = await self.repo.get(product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        return product

    async def list_products(
        self, filters: ProductFilters, page: int = 1, limit: int = 20
    ) -> ProductPage:
        products, total = await self.repo.list_products(filters, page=page, limit=limit)
        return ProductPage(products=products, total=total, page=page, limit=limit)

    async def create_product(self, details: ProductDetails, actor: str) -> Product:
        """
        Create a product with generated slug, SKUs, stock total and SEO fields.

        Raises:
            ValidationError: Another product already uses the derived slug
        """
        slug = slugify(details.name)
        await self._ensure_slug_free(slug)

        colors = _normalize_colors(details.colors)
        sizes = _normalize_sizes(details.sizes)
        category = details.category.value
        product = Product(
            name=details.name.strip(),
            slug=slug,
            description=details.description,
            price=quantize(details.price),
            original_price=quantize(details.original_price) if details.original_price else None,
            discount=details.discount,
            category=category,
            subcategory=details.subcategory,
            material=details.material,
            colors=colors,
            sizes=sizes,
            variants=build_variants(details.name, colors, sizes),
            images=[dict(image) for image in details.images],
            care_instructions=list(details.care_instructions),
            features=list(details.features),
            stock=total_stock(sizes),
            low_stock_threshold=details.low_stock_threshold,
            is_active=details.is_active,
            is_featured=details.is_featured,
            is_new=details.is_new,
            meta_title=details.name,
            meta_description=details.description[:META_DESCRIPTION_LENGTH],
            keywords=_keywords(details.name, category, details.material),
        )
        self.repo.add(product)
        await self._commit(slug)

        metrics.record_catalog_change("created")
        logger.info(
            "product_created",
            product_id=str(product.id),
            slug=slug,
            stock=product.stock,
            variants=len(product.variants),
            admin=actor,
        )
        return product

    async def update_product(
        self, product_id: uuid.UUID, changes: Dict[str, Any], actor: str
    ) -> Product:
        """
        Apply a partial update.

        Renaming regenerates the slug; changing sizes recomputes stock; changing
        sizes or colors regenerates the variant SKUs.

        Raises:
            NotFound: Unknown product
            ValidationError: Unknown field, bad value, or slug already taken
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError.for_field(
                sorted(unknown)[0], f"Field cannot be updated: {', '.join(sorted(unknown))}"
            )
        if "discount" in changes and not Decimal("0") <= changes["discount"] <= Decimal("100"):
            raise ValidationError.for_field("discount", "Discount must be between 0 and 100")

        product = await self.get_product(product_id)
        changes = dict(changes)

        if "name" in changes and changes["name"] != product.name:
            new_slug = slugify(changes["name"])
            if not new_slug:
                raise ValidationError.for_field("name", "Product name must contain letters or digits")
            await self._ensure_slug_free(new_slug, exclude_id=product.id)
            product.slug = new_slug
            product.meta_title = changes["name"]
        if "colors" in changes:
            changes["colors"] = _normalize_colors(changes["colors"])
        if "sizes" in changes:
            changes["sizes"] = _normalize_sizes(changes["sizes"])
            product.stock = total_stock(changes["sizes"])
        if "category" in changes and isinstance(changes["category"], ProductCategory):
            changes["category"] = changes["category"].value
        for money_field in ("price", "original_price"):
            if changes.get(money_field) is not None:
                changes[money_field] = quantize(changes[money_field])

        for key, value in changes.items():
            setattr(product, key, value)

        if {"name", "colors", "sizes"} & set(changes):
            product.variants = build_variants(product.name, product.colors, product.sizes)
        if {"name", "category", "material"} & set(changes):
            product.keywords = _keywords(product.name, product.category, product.material)
        if "description" in changes:
            product.meta_description = product.description[:META_DESCRIPTION_LENGTH]

        await self._commit(product.slug)
        await self.db.refresh(product)

        metrics.record_catalog_change("updated")
        logger.info(
            "product_updated",
            product_id=str(product_id),
            fields=sorted(changes),
            admin=actor,
        )
        return product

    async def delete_product(self, product_id: uuid.UUID, actor: str) -> None:
        """
        Remove a product.

        Past orders keep their own copy of item name and price, so deleting
        a product never changes an order.
        """
        product = await self.get_product(product_id)
        slug = product.slug
        await self.repo.delete(product)
        await self.db.commit()

        metrics.record_catalog_change("deleted")
        logger.info("product_deleted", product_id=str(product_id), slug=slug, admin=actor)
