import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from catalog_sync.ingest.models import CatalogLookups
from catalog_sync.ingest.persist import BatchPersister
from catalog_sync.logic.transform import Transformer

from conftest import FakeSleep


def transform(products, channel):
    return Transformer().format(products, channel, CatalogLookups())


def count(engine, sql, **params):
    with engine.connect() as conn:
        return conn.execute(text(sql), params).scalar_one()


@pytest.mark.asyncio
async def test_persist_writes_products_and_children(seeded_engine, make_product, channel):
    options = [{"id": 90, "display_name": "Color", "option_values": [{"id": 1, "label": "Azul"}]}]
    chunk = transform([make_product(1, categories=(10, 11), options=options)], channel)
    outcome = await BatchPersister(seeded_engine, concurrency=1).persist(chunk)

    assert outcome.committed
    assert outcome.attempts == 1
    assert count(seeded_engine, "SELECT COUNT(*) FROM products") == 1
    assert count(seeded_engine, "SELECT COUNT(*) FROM variants WHERE product_id = 1") == 1
    assert count(seeded_engine, "SELECT COUNT(*) FROM category_products WHERE product_id = 1") == 2
    assert count(seeded_engine, "SELECT COUNT(*) FROM options WHERE product_id = 1") == 1
    assert count(seeded_engine, "SELECT COUNT(*) FROM channel_product WHERE channel_id = 1") == 1
    assert count(seeded_engine, "SELECT cash_price FROM products WHERE id = 1") == 78


@pytest.mark.asyncio
async def test_scoped_replacement_leaves_other_products(seeded_engine, make_product, channel):
    persister = BatchPersister(seeded_engine, concurrency=1)
    await persister.persist(transform([make_product(pid, categories=(10, 11)) for pid in (1, 2, 3)], channel))

    await persister.persist(transform([make_product(1, categories=(10,)), make_product(2, categories=(11,))], channel))

    assert count(seeded_engine, "SELECT COUNT(*) FROM category_products WHERE product_id = 3") == 2
    assert count(seeded_engine, "SELECT COUNT(*) FROM variants WHERE product_id = 3") == 1
    assert count(seeded_engine, "SELECT COUNT(*) FROM channel_product WHERE product_id = 3") == 1
    assert count(seeded_engine, "SELECT COUNT(*) FROM category_products WHERE product_id IN (1, 2)") == 2


@pytest.mark.asyncio
async def test_variants_are_recreated_not_merged(seeded_engine, make_product, channel):
    persister = BatchPersister(seeded_engine, concurrency=1)
    first = [
        {"id": 11, "sku": "A", "price": 10, "sale_price": 0, "inventory_level": 1, "option_values": []},
        {"id": 12, "sku": "B", "price": 10, "sale_price": 0, "inventory_level": 1, "option_values": []},
    ]
    await persister.persist(transform([make_product(1, variants=first)], channel))
    await persister.persist(transform([make_product(1, variants=first[:1])], channel))

    with seeded_engine.connect() as conn:
        ids = conn.execute(text("SELECT id FROM variants WHERE product_id = 1")).scalars().all()
    assert ids == [11]


@pytest.mark.asyncio
async def test_unknown_categories_are_tracked(seeded_engine, make_product, channel):
    chunk = transform([make_product(1, categories=(10, 999))], channel)
    outcome = await BatchPersister(seeded_engine, concurrency=1).persist(chunk)
    assert outcome.committed
    assert outcome.failed_categories == [(1, 999)]
    assert count(seeded_engine, "SELECT COUNT(*) FROM category_products") == 1


@pytest.mark.asyncio
async def test_transient_failure_retries_then_gives_up(seeded_engine, make_product, channel, monkeypatch):
    sleep = FakeSleep()
    persister = BatchPersister(seeded_engine, concurrency=1, base_delay=1.0, sleep=sleep)
    calls = []

    def always_refused(chunk):
        calls.append(chunk)
        raise OperationalError("INSERT", {}, Exception("connection refused"))

    monkeypatch.setattr(persister, "_write_chunk", always_refused)
    chunk = transform([make_product(1), make_product(2)], channel)
    outcome = await persister.persist(chunk)

    assert len(calls) == 3
    assert sleep.calls == [2.0, 4.0]
    assert not outcome.committed
    assert outcome.attempts == 3
    assert outcome.product_ids == [1, 2]
    assert "connection refused" in outcome.error


@pytest.mark.asyncio
async def test_non_transient_failure_is_not_retried(seeded_engine, make_product, channel, monkeypatch):
    persister = BatchPersister(seeded_engine, concurrency=1, sleep=FakeSleep())
    calls = []

    def broken(chunk):
        calls.append(chunk)
        raise OperationalError("INSERT", {}, Exception("no such column: bogus"))

    monkeypatch.setattr(persister, "_write_chunk", broken)
    outcome = await persister.persist(transform([make_product(1)], channel))
    assert len(calls) == 1
    assert not outcome.committed


@pytest.mark.asyncio
async def test_failed_chunk_rolls_back(seeded_engine, make_product, channel):
    persister = BatchPersister(seeded_engine, concurrency=1, sleep=FakeSleep())
    chunk = transform([make_product(1)], channel)
    chunk.variants[0].sku = None
    outcome = await persister.persist(chunk)

    assert not outcome.committed
    assert count(seeded_engine, "SELECT COUNT(*) FROM products") == 0
