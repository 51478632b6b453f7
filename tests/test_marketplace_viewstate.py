"""Tests for the marketplace view state."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from marketplace import MarketplaceError
from marketplace.models import ProductStatus
from viewstate.marketplace import MarketplaceViewState, SearchParams

from conftest import ADMIN_ID, ALICE, BOB, seed_product

TIMEOUT = 1.0

async def open_view(repository) -> MarketplaceViewState:
    view = MarketplaceViewState(repository)
    await view.start()
    await view.state.wait_for(lambda s: not s.is_loading, TIMEOUT)
    return view

@pytest_asyncio.fixture
async def seeded(store):
    await seed_product(store, "p1", title="Red ball", price=Decimal("5"), tags=["#toy"], minutes=1)
    await seed_product(store, "p2", title="Dog bed", price=Decimal("60"), minutes=2)
    await seed_product(store, "p3", title="Red leash", status=ProductStatus.PAUSED, minutes=3)
    await seed_product(store, "q1", seller_id=BOB, status=ProductStatus.PENDING, minutes=4)
    await seed_product(store, "q2", seller_id=BOB, status=ProductStatus.PENDING, minutes=5)
    await seed_product(store, "q3", seller_id=BOB, status=ProductStatus.PENDING, minutes=6)
    return store

@pytest_asyncio.fixture
async def admin_view(seeded, identity, marketplace_repository):
    identity.sign_in(ADMIN_ID)
    view = await open_view(marketplace_repository)
    await view.state.wait_for(lambda s: len(s.pending_products) == 3, TIMEOUT)
    yield view
    await view.close()

@pytest_asyncio.fixture
async def seller_view(seeded, marketplace_repository):
    view = await open_view(marketplace_repository)
    yield view
    await view.close()

def pending_ids(view):
    return [p.id for p in view.state.value.pending_products]

def test_search_params_filters():
    assert not SearchParams().has_filters
    assert not SearchParams(query="   ").has_filters
    assert SearchParams(tags=("#toy",)).has_filters
    assert SearchParams(min_price=Decimal("0")).has_filters

@pytest.mark.asyncio
async def test_seller_sees_approved_products_and_own_listings(seller_view):
    state = seller_view.state.value

    assert state.current_user_id == ALICE
    assert not state.is_admin
    assert [p.id for p in state.products] == ["p2", "p1"]
    assert state.pending_products == []

    state = await seller_view.state.wait_for(lambda s: len(s.my_products) == 3, TIMEOUT)
    assert [p.id for p in state.my_products] == ["p3", "p2", "p1"]

@pytest.mark.asyncio
async def test_search_switches_to_latest_params(seller_view):
    seller_view.set_search_query("red")
    state = await seller_view.state.wait_for(
        lambda s: not s.is_loading and s.search.query == "red", TIMEOUT
    )
    # The paused listing never shows up
    assert [p.id for p in state.products] == ["p1"]

    seller_view.set_search_query("bed")
    seller_view.set_price_range(Decimal("50"), None)
    state = await seller_view.state.wait_for(lambda s: not s.is_loading, TIMEOUT)
    assert state.search == SearchParams(query="bed", min_price=Decimal("50"))
    assert [p.id for p in state.products] == ["p2"]
    assert seller_view.jobs.slots('products') == ['products']

    seller_view.set_selected_tags(["#toy"])
    state = await seller_view.state.wait_for(lambda s: not s.is_loading, TIMEOUT)
    assert state.products == []

    seller_view.clear_filters()
    state = await seller_view.state.wait_for(lambda s: not s.is_loading, TIMEOUT)
    assert [p.id for p in state.products] == ["p2", "p1"]

@pytest.mark.asyncio
async def test_unchanged_params_keep_subscription(seller_view):
    task = seller_view.jobs._tasks['products']

    seller_view.set_search_params(SearchParams())

    assert seller_view.jobs._tasks['products'] is task
    assert not task.cancelled()

@pytest.mark.asyncio
async def test_admin_sees_pending_oldest_first(admin_view):
    assert admin_view.state.value.is_admin
    assert pending_ids(admin_view) == ["q1", "q2", "q3"]

@pytest.mark.asyncio
async def test_blank_rejection_reason_is_refused(admin_view, marketplace_repository):
    admin_view.show_reject_dialog("q2")
    admin_view.update_admin_comment("   ")

    with patch.object(marketplace_repository, 'update_product_status', AsyncMock()) as update:
        assert await admin_view.reject_product() is False
        update.assert_not_awaited()

    state = admin_view.state.value
    assert state.error == "Please give a reason for rejecting this product"
    assert state.reject_dialog_product_id == "q2"
    assert pending_ids(admin_view) == ["q1", "q2", "q3"]

@pytest.mark.asyncio
async def test_reject_removes_product_from_queue(admin_view, marketplace_repository):
    admin_view.show_reject_dialog("q2")
    admin_view.update_admin_comment("Stock photo")

    assert await admin_view.reject_product() is True

    state = admin_view.state.value
    assert state.success_message == "Product rejected"
    assert state.reject_dialog_product_id is None
    assert state.admin_comment == ''
    assert "q2" not in pending_ids(admin_view)

    stored = await marketplace_repository.get_product("q2")
    assert stored.status is ProductStatus.REJECTED
    assert stored.rejection_reason == "Stock photo"

@pytest.mark.asyncio
async def test_approve_is_optimistic(admin_view, marketplace_repository):
    gate = asyncio.Event()

    async def slow_update(*args, **kwargs):
        await gate.wait()

    admin_view.show_approve_dialog("q1")
    with patch.object(marketplace_repository, 'update_product_status', AsyncMock(side_effect=slow_update)):
        task = asyncio.create_task(admin_view.approve_product())
        await asyncio.sleep(0)

        assert pending_ids(admin_view) == ["q2", "q3"]
        assert admin_view.state.value.is_processing

        gate.set()
        assert await task is True

    assert admin_view.state.value.success_message == "Product approved"
    assert not admin_view.state.value.is_processing

@pytest.mark.asyncio
async def test_failed_approval_restores_product(admin_view, marketplace_repository):
    failure = AsyncMock(side_effect=MarketplaceError("offline"))

    with patch.object(marketplace_repository, 'update_product_status', failure):
        assert await admin_view.approve_product("q2") is False

    failure.assert_awaited_once_with("q2", ProductStatus.APPROVED, None)
    state = admin_view.state.value
    assert pending_ids(admin_view) == ["q1", "q2", "q3"]
    assert "offline" in state.error
    assert not state.is_processing

    admin_view.clear_error()
    assert admin_view.state.value.error is None

@pytest.mark.asyncio
async def test_approval_reaches_the_store(admin_view, marketplace_repository):
    admin_view.show_approve_dialog("q3")
    admin_view.update_admin_comment("Looks good")

    assert await admin_view.approve_product() is True

    state = await admin_view.state.wait_for(lambda s: any(p.id == "q3" for p in s.products), TIMEOUT)
    assert pending_ids(admin_view) == ["q1", "q2"]
    assert [p.id for p in state.products][0] == "q3"
    assert (await marketplace_repository.get_product("q3")).admin_comment == "Looks good"

@pytest.mark.asyncio
async def test_reactivate_paused_product(seller_view, marketplace_repository):
    assert await seller_view.reactivate_product("p3") is True

    assert seller_view.state.value.success_message == "Product reactivated"
    assert (await marketplace_repository.get_product("p3")).status is ProductStatus.APPROVED
    await seller_view.state.wait_for(lambda s: any(p.id == "p3" for p in s.products), TIMEOUT)

    seller_view.clear_success_message()
    assert seller_view.state.value.success_message is None

@pytest.mark.asyncio
async def test_reactivate_approved_product_is_refused(seller_view, marketplace_repository):
    with patch.object(marketplace_repository, 'reactivate_product', AsyncMock()) as reactivate:
        assert await seller_view.reactivate_product("p1") is False
        reactivate.assert_not_awaited()

    assert seller_view.state.value.error == "Only paused or sold products can be reactivated"

@pytest.mark.asyncio
async def test_reactivate_missing_product(seller_view):
    assert await seller_view.reactivate_product("nope") is False
    assert seller_view.state.value.error == "Product not found"

@pytest.mark.asyncio
async def test_favorites_follow_the_store(seller_view, marketplace_repository):
    await marketplace_repository.add_to_favorites("p2")

    state = await seller_view.state.wait_for(lambda s: len(s.favorite_products) == 1, TIMEOUT)
    assert state.favorite_products[0].id == "p2"

@pytest.mark.asyncio
async def test_search_changes_do_not_leak_listeners(seller_view, seeded):
    await asyncio.sleep(0.05)
    before = seeded.listener_count

    seller_view.set_search_query("red")
    seller_view.set_price_range(Decimal("1"), Decimal("100"))
    seller_view.set_selected_tags(["#toy"])
    seller_view.clear_filters()
    await seller_view.state.wait_for(lambda s: not s.is_loading and len(s.products) == 2, TIMEOUT)
    await asyncio.sleep(0.05)

    assert seller_view.jobs.slots('products') == ['products']
    assert seeded.listener_count == before

    await seller_view.close()
    assert seeded.listener_count == 0
