"""Read-only registry of unlockable styles and purchasable products."""

from decimal import Decimal
from typing import Iterable, Optional

from .config import Settings, get_settings
from .models import CatalogItem, Product


INCLUDED_STYLES = (
    ("minimal", "Minimal"),
    ("dark_gradient", "Dark Gradient"),
    ("asphalt", "Asphalt"),
)

PREMIUM_STYLES = (
    ("neon", "Neon"),
    ("blueprint", "Blueprint"),
    ("frosted_glass", "Frosted Glass"),
    ("sunset", "Sunset"),
    ("carbon_weave", "Carbon Weave"),
    ("bokeh_night", "Bokeh Night"),
    ("garage_glow", "Garage Glow"),
    ("cinematic_rain", "Cinematic Rain"),
    ("retro_film", "Retro Film"),
)

CREDIT_PACKS = (
    ("credits_40_399", 40, Decimal("3.99")),
    ("credits_120_999", 120, Decimal("9.99")),
    ("credits_260_1999", 260, Decimal("19.99")),
    ("credits_520_3499", 520, Decimal("34.99")),
)


def default_styles(style_cost: int) -> list[CatalogItem]:
    styles = [
        CatalogItem(id=style_id, title=title, cost=0, included=True, sort_order=index)
        for index, (style_id, title) in enumerate(INCLUDED_STYLES)
    ]
    offset = len(styles)
    styles.extend(
        CatalogItem(id=style_id, title=title, cost=style_cost, sort_order=offset + index)
        for index, (style_id, title) in enumerate(PREMIUM_STYLES)
    )
    return styles


def default_products(unlock_product_id: str) -> list[Product]:
    products = [
        Product(
            id=unlock_product_id,
            credits=100,
            unlocks=True,
            unlocks_items=tuple(style_id for style_id, _ in INCLUDED_STYLES),
            price=Decimal("8.99"),
        )
    ]
    products.extend(
        Product(id=product_id, credits=credits, price=price)
        for product_id, credits, price in CREDIT_PACKS
    )
    return products


class Catalog:
    def __init__(self, items: Iterable[CatalogItem], products: Iterable[Product] = ()):
        self._items = {item.id: item for item in items}
        self._products = {product.id: product for product in products}

    @classmethod
    def default(cls, settings: Optional[Settings] = None) -> "Catalog":
        settings = settings or get_settings()
        return cls(
            default_styles(settings.style_credit_cost),
            default_products(settings.unlock_product_id),
        )

    def get_item(self, item_id: str) -> Optional[CatalogItem]:
        return self._items.get(item_id)

    def list_active(self) -> list[CatalogItem]:
        active = [item for item in self._items.values() if item.active]
        return sorted(active, key=lambda item: (item.sort_order, item.id))

    def included_item_ids(self) -> list[str]:
        return [item.id for item in self.list_active() if item.included]

    def get_product(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)
