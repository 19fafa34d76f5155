import httpx
import pytest
import respx
from sqlalchemy import text

from catalog_sync.ingest.cache import RunCache
from catalog_sync.ingest.categories import CategoryLookup, CategorySync, parse_category
from catalog_sync.ingest.inventory import SafetyStockSync, load_stock_levels, parse_inventory_item

from conftest import BASE_URL

CATEGORIES_URL = f"{BASE_URL}/v3/catalog/trees/categories"
INVENTORY_URL = f"{BASE_URL}/v3/inventory/locations/5/items"


def inventory_item(sku, available=10, safety=2, product_id=1):
    return {
        "identity": {"sku": sku, "product_id": product_id, "variant_id": product_id * 10},
        "settings": {"safety_stock": safety, "warning_level": 3, "bin_picking_number": ""},
        "available_to_sell": available,
    }


@pytest.mark.asyncio
async def test_category_sync_pages_and_upserts(engine, make_client):
    pages = {
        "1": {
            "data": [
                {"category_id": 1, "parent_id": 0, "name": "Perros", "url": {"path": "/perros/"}, "is_visible": True},
                {"name": "sin id"},
            ],
            "meta": {"pagination": {"total_pages": 2}},
        },
        "2": {
            "data": [{"id": 2, "parent_id": 1, "name": "Alimento", "url": {"path": "/perros/alimento/"}}],
            "meta": {"pagination": {"total_pages": 2}},
        },
    }

    def respond(request):
        return httpx.Response(200, json=pages[request.url.params["page"]])

    async with respx.mock(assert_all_called=True) as router:
        route = router.get(CATEGORIES_URL).mock(side_effect=respond)
        async with httpx.AsyncClient() as session:
            result = await CategorySync(engine, make_client(session)).sync()

    assert route.call_count == 2
    assert result.saved == 2
    assert result.failed == 1
    assert result.pages == 2
    with engine.connect() as conn:
        rows = conn.execute(text("SELECT category_id, parent_id, title, url FROM categories ORDER BY category_id")).all()
    assert [tuple(row) for row in rows] == [(1, 0, "Perros", "/perros/"), (2, 1, "Alimento", "/perros/alimento/")]


@pytest.mark.asyncio
async def test_category_sync_updates_existing_rows(seeded_engine, make_client):
    payload = {"data": [{"category_id": 10, "parent_id": 0, "name": "Perros y cachorros"}]}
    async with respx.mock(assert_all_called=True) as router:
        router.get(CATEGORIES_URL).mock(return_value=httpx.Response(200, json=payload))
        async with httpx.AsyncClient() as session:
            await CategorySync(seeded_engine, make_client(session)).sync()
    with seeded_engine.connect() as conn:
        title = conn.execute(text("SELECT title FROM categories WHERE category_id = 10")).scalar_one()
    assert title == "Perros y cachorros"


def test_parse_category_accepts_plain_url():
    record = parse_category({"id": "7", "name": "Gatos", "url": "/gatos/"})
    assert record.category_id == 7
    assert record.url == "/gatos/"
    assert record.is_visible is False


@pytest.mark.parametrize("bad", [{"parent_id": "x"}, {"sort_order": "first"}, {"id": None}])
def test_parse_category_rejects_bad_numbers(bad):
    item = {"id": 8, "parent_id": 0, "name": "Aves", **bad}
    assert parse_category(item) is None


@pytest.mark.asyncio
async def test_category_page_with_bad_parent_still_saves_rest(engine, make_client):
    payload = {
        "data": [
            {"category_id": 1, "parent_id": "root", "name": "Roto"},
            {"category_id": 2, "parent_id": 0, "name": "Aves", "sort_order": "3"},
        ]
    }
    async with respx.mock(assert_all_called=True) as router:
        router.get(CATEGORIES_URL).mock(return_value=httpx.Response(200, json=payload))
        async with httpx.AsyncClient() as session:
            result = await CategorySync(engine, make_client(session)).sync()
    assert result.saved == 1
    assert result.failed == 1
    with engine.connect() as conn:
        rows = conn.execute(text("SELECT category_id, sort_order FROM categories")).all()
    assert [tuple(row) for row in rows] == [(2, 3)]


def test_category_lookup_uses_cache(seeded_engine):
    cache = RunCache()
    lookup = CategoryLookup(seeded_engine, cache)
    assert lookup.titles([10, 11, 999]) == {10: "Perros", 11: "Gatos"}
    assert lookup.children(300) == {301: "Llega en marzo"}

    with seeded_engine.begin() as conn:
        conn.execute(text("UPDATE categories SET title = 'Cambiado' WHERE category_id = 10"))
    assert lookup.titles([10]) == {10: "Perros"}
    assert lookup.children(None) == {}
    assert cache.hits >= 1


@pytest.mark.asyncio
async def test_safety_stock_sync_saves_every_page(engine, make_client):
    def respond(request):
        page = request.url.params["page"]
        if page == "1":
            data = [inventory_item("SKU-1"), inventory_item("", product_id=2)]
        elif page == "2":
            data = [inventory_item("SKU-3", available=0, safety=1, product_id=3)]
        else:
            return httpx.Response(500)
        return httpx.Response(200, json={"data": data, "meta": {"pagination": {"total_pages": 3}}})

    async with respx.mock(assert_all_called=True) as router:
        router.get(INVENTORY_URL).mock(side_effect=respond)
        async with httpx.AsyncClient() as session:
            result = await SafetyStockSync(engine, make_client(session), concurrency=1).sync(5)

    assert result.saved == 2
    assert result.skipped == 1
    assert result.pages == 3
    assert result.failed_pages == [3]
    levels = load_stock_levels(engine, ["SKU-1", "SKU-3", "SKU-404"])
    assert levels["SKU-1"].available_to_sell == 10
    assert levels["SKU-1"].safety_stock == 2
    assert levels["SKU-3"].available_to_sell == 0
    assert "SKU-404" not in levels


def test_parse_inventory_item_requires_identity():
    assert parse_inventory_item({"identity": {"sku": "X"}}) is None
    record = parse_inventory_item(inventory_item(" SKU-9 "))
    assert record.sku == "SKU-9"
    assert record.bin_picking_number is None


def test_load_stock_levels_without_skus(engine):
    assert load_stock_levels(engine, ["", "  "]) == {}


def test_run_cache_evicts_oldest_entry():
    cache = RunCache(max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1
    cache.set("c", 3)
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert len(cache) == 2


def test_run_cache_expires_entries():
    now = [0.0]
    cache = RunCache(ttl_seconds=10, clock=lambda: now[0])
    cache.set("a", 1)
    now[0] = 11.0
    assert cache.get("a", "gone") == "gone"
    assert cache.misses == 1
    assert len(cache) == 0
