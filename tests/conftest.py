import pytest
from sqlalchemy import create_engine, text

from catalog_sync.db.migrate import run_migrations
from catalog_sync.ingest.bigcommerce import BigCommerceClient
from catalog_sync.ingest.models import ChannelConfig
from catalog_sync.utils.rate_limit import RateLimiter

BASE_URL = "https://api.example.test/stores/abc123"

CATEGORIES = [
    {"category_id": 10, "parent_id": 0, "title": "Perros"},
    {"category_id": 11, "parent_id": 0, "title": "Gatos"},
    {"category_id": 100, "parent_id": 0, "title": "Beneficios"},
    {"category_id": 101, "parent_id": 100, "title": "Envio gratis"},
    {"category_id": 200, "parent_id": 0, "title": "Campanas"},
    {"category_id": 201, "parent_id": 200, "title": "Cyber"},
    {"category_id": 300, "parent_id": 0, "title": "Reserva"},
    {"category_id": 301, "parent_id": 300, "title": "Llega en marzo"},
    {"category_id": 400, "parent_id": 0, "title": "Sameday"},
]


class FakeSleep:
    """Records requested sleeps instead of waiting."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'catalog.db'}", future=True)
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def seeded_engine(engine):
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO categories (category_id, parent_id, title) VALUES (:category_id, :parent_id, :title)"),
            CATEGORIES,
        )
    return engine


@pytest.fixture()
def channel():
    return ChannelConfig(
        name="UF",
        channel_id=1,
        transfer_percent=2,
        country_code="CL",
        benefits_category=100,
        campaigns_category=200,
        reserve_category=300,
        sameday_category=400,
    )


@pytest.fixture()
def fake_sleep():
    return FakeSleep()


@pytest.fixture()
def limiter(fake_sleep):
    return RateLimiter(sleep=fake_sleep)


@pytest.fixture()
def make_client(limiter):
    def _make(session):
        return BigCommerceClient(BASE_URL, "token", rate_limiter=limiter, session=session)

    return _make


@pytest.fixture()
def make_product():
    def _make(product_id, *, price=100.0, sale_price=80.0, categories=(10,), variants=None, **extra):
        if variants is None:
            variants = [
                {
                    "id": product_id * 10,
                    "sku": f"SKU-{product_id}",
                    "price": price,
                    "sale_price": sale_price,
                    "inventory_level": 5,
                    "weight": 1.0,
                    "width": 10,
                    "depth": 10,
                    "height": 10,
                    "option_values": [],
                }
            ]
        product = {
            "id": product_id,
            "name": f"Product {product_id}",
            "description": f"Description of product {product_id}",
            "brand_id": 7,
            "categories": list(categories),
            "price": price,
            "sale_price": sale_price,
            "is_visible": True,
            "is_featured": False,
            "total_sold": 3,
            "weight": 1.0,
            "sort_order": 0,
            "custom_url": {"url": f"/product-{product_id}/"},
            "images": [
                {"id": 1, "is_thumbnail": True, "url_standard": f"https://cdn.test/{product_id}.jpg", "description": ""}
            ],
            "variants": variants,
            "related_products": [],
            "meta_keywords": [],
        }
        product.update(extra)
        return product

    return _make
