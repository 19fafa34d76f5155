import httpx
import pytest
import respx

from catalog_sync.ingest.listing import BatchFetcher, ProductPaginator, chunked, dedupe_ids

from conftest import BASE_URL

ASSIGNMENTS_URL = f"{BASE_URL}/v3/catalog/products/channel-assignments"
PRODUCTS_URL = f"{BASE_URL}/v3/catalog/products"


def assignment_page(ids, total_pages):
    return {
        "data": [{"product_id": product_id, "channel_id": 1} for product_id in ids],
        "meta": {"pagination": {"total_pages": total_pages}},
    }


def requested_ids(request):
    return [int(value) for value in request.url.params["id:in"].split(",")]


@pytest.mark.asyncio
async def test_paginator_walks_every_page(make_client):
    pages = {
        "1": assignment_page(range(1, 201), 2),
        "2": assignment_page(range(201, 351), 2),
    }

    def respond(request):
        return httpx.Response(200, json=pages[request.url.params["page"]])

    async with respx.mock(assert_all_called=True) as router:
        route = router.get(ASSIGNMENTS_URL).mock(side_effect=respond)
        async with httpx.AsyncClient() as session:
            paginator = ProductPaginator(make_client(session), page_size=200)
            listing = await paginator.list_all_ids(1)
    assert route.call_count == 2
    assert len(listing.ids) == 350
    assert len(set(listing.ids)) == 350
    assert listing.total_pages == 2
    assert listing.complete


@pytest.mark.asyncio
async def test_malformed_page_degrades_to_empty(make_client):
    def respond(request):
        page = request.url.params["page"]
        if page == "1":
            return httpx.Response(200, json=assignment_page([1, 2], 3))
        if page == "2":
            return httpx.Response(200, json={"unexpected": True})
        return httpx.Response(200, json=assignment_page([3, 3], 3))

    async with respx.mock(assert_all_called=True) as router:
        router.get(ASSIGNMENTS_URL).mock(side_effect=respond)
        async with httpx.AsyncClient() as session:
            listing = await ProductPaginator(make_client(session)).list_all_ids(1)
    assert listing.ids == [1, 2, 3, 3]
    assert listing.failed_pages == [2]
    assert not listing.complete


@pytest.mark.asyncio
async def test_failed_page_is_recorded(make_client):
    def respond(request):
        if request.url.params["page"] == "2":
            return httpx.Response(500)
        return httpx.Response(200, json=assignment_page([1], 2))

    async with respx.mock(assert_all_called=True) as router:
        router.get(ASSIGNMENTS_URL).mock(side_effect=respond)
        async with httpx.AsyncClient() as session:
            listing = await ProductPaginator(make_client(session)).list_all_ids(1)
    assert listing.ids == [1]
    assert listing.failed_pages == [2]


@pytest.mark.asyncio
async def test_assignments_without_product_id_fall_back_to_id(make_client):
    payload = {
        "data": [{"product_id": 1}, {"id": 2, "channel_id": 1}, {"channel_id": 1}, "junk"],
        "meta": {"pagination": {"total_pages": 1}},
    }
    async with respx.mock(assert_all_called=True) as router:
        router.get(ASSIGNMENTS_URL).mock(return_value=httpx.Response(200, json=payload))
        async with httpx.AsyncClient() as session:
            listing = await ProductPaginator(make_client(session)).list_all_ids(1)
    assert listing.ids == [1, 2]
    assert listing.complete

def test_chunked_and_dedupe():
    assert [len(c) for c in chunked(list(range(350)), 250)] == [250, 100]
    assert dedupe_ids([3, 1, 3, 2, 1]) == ([3, 1, 2], 2)


@pytest.mark.asyncio
async def test_fetcher_issues_one_request_per_chunk(make_client, make_product, channel):
    def respond(request):
        return httpx.Response(200, json={"data": [make_product(i) for i in requested_ids(request)]})

    async with respx.mock(assert_all_called=True) as router:
        route = router.get(PRODUCTS_URL).mock(side_effect=respond)
        async with httpx.AsyncClient() as session:
            fetcher = BatchFetcher(make_client(session), retry_delay=0)
            result = await fetcher.fetch_details(list(range(1, 351)), channel)
    assert route.call_count == 2
    assert sorted(len(requested_ids(call.request)) for call in route.calls) == [100, 250]
    assert len(result.products) == 350
    assert result.failures == {}
    assert result.missing == []
    params = route.calls[0].request.url.params
    assert params["include"] == "images,variants,options"
    assert params["availability"] == "available"


@pytest.mark.asyncio
async def test_fetcher_dedupes_overlapping_records(make_client, make_product, channel):
    def respond(request):
        ids = requested_ids(request)
        return httpx.Response(200, json={"data": [make_product(i) for i in ids + ids[:2]]})

    async with respx.mock(assert_all_called=True) as router:
        router.get(PRODUCTS_URL).mock(side_effect=respond)
        async with httpx.AsyncClient() as session:
            result = await BatchFetcher(make_client(session), retry_delay=0).fetch_details([1, 2, 3], channel)
    assert result.returned_ids == [1, 2, 3]
    assert result.duplicates == 2


@pytest.mark.asyncio
async def test_fetcher_reports_missing_ids(make_client, make_product, channel):
    async with respx.mock(assert_all_called=True) as router:
        router.get(PRODUCTS_URL).mock(return_value=httpx.Response(200, json={"data": [make_product(1)]}))
        async with httpx.AsyncClient() as session:
            result = await BatchFetcher(make_client(session), retry_delay=0).fetch_details([1, 2], channel)
    assert result.missing == [2]


@pytest.mark.asyncio
async def test_timed_out_chunk_is_attempted_three_times(make_client, make_product, channel):
    timeouts = []

    def respond(request):
        ids = requested_ids(request)
        if 1 in ids:
            timeouts.append(request)
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200, json={"data": [make_product(i) for i in ids]})

    async with respx.mock(assert_all_called=True) as router:
        router.get(PRODUCTS_URL).mock(side_effect=respond)
        async with httpx.AsyncClient() as session:
            fetcher = BatchFetcher(make_client(session), chunk_size=250, retry_delay=0)
            result = await fetcher.fetch_details(list(range(1, 351)), channel)

    assert len(timeouts) == 3
    assert sorted(result.failures) == list(range(1, 251))
    assert len(result.products) == 100
    assert result.missing == []
