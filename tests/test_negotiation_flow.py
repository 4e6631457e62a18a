import asyncio
from datetime import timedelta

import pytest

from conftest import FIXED_NOW, fixed_clock
from contract_farming_errors import (
    AuthorizationError, InvalidTransitionError, NotFoundError, UpstreamError, ValidationError
)
from contract_farming_models import Contract, ContractStatus
from contract_farming_services import build_services
from contract_farming_storage import InMemoryDocumentStore


async def _available(services, listing_id):
    return (await services.catalog.get_listing(listing_id)).available_quantity


async def _stored_status(services, contract_id):
    return (await services.engine.storage.get_contract(contract_id)).status


@pytest.mark.asyncio
async def test_publish_then_propose_creates_pending_contract(services, farmer_session, buyer_session):
    listing = await services.catalog.publish(farmer_session, {
        "cropName": "Tomato",
        "cropCategory": "Vegetables",
        "availableQuantity": 100,
        "minPrice": 10,
        "harvestDate": "2026-11-15",
    })
    contract = await services.engine.propose(buyer_session, listing.id, quantity=10, price=12)

    assert contract.id is not None
    assert contract.status == ContractStatus.PENDING
    assert contract.total_value == 120
    assert contract.farmer_id == "farmer-1"
    assert contract.buyer_id == "buyer-1"
    assert contract.created_at == FIXED_NOW
    assert contract.delivery_date == FIXED_NOW + timedelta(days=30)

    stored = await services.engine.get_contract(buyer_session, contract.id)
    assert stored == contract


@pytest.mark.asyncio
async def test_accept_then_accept_again_fails(services, farmer_session, proposed_contract):
    accepted = await services.engine.accept(farmer_session, proposed_contract.id)
    assert accepted.status == ContractStatus.ACTIVE

    with pytest.raises(InvalidTransitionError):
        await services.engine.accept(farmer_session, proposed_contract.id)
    assert await _stored_status(services, proposed_contract.id) == ContractStatus.ACTIVE


@pytest.mark.asyncio
async def test_decline_is_terminal(services, farmer_session, buyer_session, proposed_contract):
    declined = await services.engine.decline(farmer_session, proposed_contract.id)
    assert declined.status == ContractStatus.CANCELLED

    for transition, session in [
        (services.engine.accept, farmer_session),
        (services.engine.decline, farmer_session),
        (services.engine.mark_delivered, farmer_session),
        (services.engine.cancel, buyer_session),
    ]:
        with pytest.raises(InvalidTransitionError):
            await transition(session, proposed_contract.id)
    assert await _stored_status(services, proposed_contract.id) == ContractStatus.CANCELLED


@pytest.mark.asyncio
async def test_full_lifecycle_to_completed(services, farmer_session, proposed_contract):
    await services.engine.accept(farmer_session, proposed_contract.id)
    completed = await services.engine.mark_delivered(farmer_session, proposed_contract.id)
    assert completed.status == ContractStatus.COMPLETED
    assert completed.updated_at == FIXED_NOW

    with pytest.raises(InvalidTransitionError):
        await services.engine.cancel(farmer_session, proposed_contract.id)


@pytest.mark.asyncio
async def test_buyer_cannot_accept_own_proposal(services, buyer_session, proposed_contract):
    with pytest.raises(InvalidTransitionError):
        await services.engine.accept(buyer_session, proposed_contract.id)
    assert await _stored_status(services, proposed_contract.id) == ContractStatus.PENDING


@pytest.mark.asyncio
async def test_buyer_can_cancel_active_contract(services, farmer_session, buyer_session, proposed_contract):
    await services.engine.accept(farmer_session, proposed_contract.id)
    cancelled = await services.engine.cancel(buyer_session, proposed_contract.id)
    assert cancelled.status == ContractStatus.CANCELLED


@pytest.mark.asyncio
async def test_outsiders_cannot_read_or_transition(services, other_farmer_session, other_buyer_session, proposed_contract):
    with pytest.raises(AuthorizationError):
        await services.engine.get_contract(other_buyer_session, proposed_contract.id)
    with pytest.raises(AuthorizationError):
        await services.engine.accept(other_farmer_session, proposed_contract.id)
    assert await _stored_status(services, proposed_contract.id) == ContractStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_ids(services, farmer_session, buyer_session):
    with pytest.raises(NotFoundError):
        await services.engine.propose(buyer_session, "missing", quantity=1, price=1)
    with pytest.raises(NotFoundError):
        await services.engine.accept(farmer_session, "missing")


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity,price", [(101, 12.0), (0, 12.0), (10, 9.5)])
async def test_invalid_proposal_leaves_no_trace(services, store, buyer_session, published_listing, quantity, price):
    with pytest.raises(ValidationError):
        await services.engine.propose(buyer_session, published_listing.id, quantity=quantity, price=price)

    assert await store.query("contracts") == []
    assert await _available(services, published_listing.id) == 100


@pytest.mark.asyncio
async def test_farmer_cannot_propose(services, farmer_session, published_listing):
    with pytest.raises(AuthorizationError):
        await services.engine.propose(farmer_session, published_listing.id, quantity=10, price=12.0)


@pytest.mark.asyncio
async def test_proposal_reserves_quantity_and_decline_releases_it(services, farmer_session, proposed_contract):
    assert proposed_contract.reserved_quantity == 10
    assert await _available(services, proposed_contract.listing_id) == 90

    await services.engine.decline(farmer_session, proposed_contract.id)
    assert await _available(services, proposed_contract.listing_id) == 100


@pytest.mark.asyncio
async def test_completed_contract_keeps_quantity(services, farmer_session, proposed_contract):
    await services.engine.accept(farmer_session, proposed_contract.id)
    await services.engine.mark_delivered(farmer_session, proposed_contract.id)
    assert await _available(services, proposed_contract.listing_id) == 90


@pytest.mark.asyncio
async def test_concurrent_proposals_cannot_overbook(services, buyer_session, other_buyer_session, published_listing):
    results = await asyncio.gather(
        services.engine.propose(buyer_session, published_listing.id, quantity=60, price=12.0),
        services.engine.propose(other_buyer_session, published_listing.id, quantity=60, price=12.0),
        return_exceptions=True,
    )
    contracts = [r for r in results if isinstance(r, Contract)]
    failures = [r for r in results if isinstance(r, ValidationError)]

    assert len(contracts) == 1
    assert len(failures) == 1
    assert await _available(services, published_listing.id) == 40


class ContendedStore(InMemoryDocumentStore):
    """Another buyer takes 5 units from the listing just before each of our swaps"""

    def __init__(self, contended_swaps):
        super().__init__()
        self.contended_swaps = contended_swaps

    async def compare_and_update(self, collection, doc_id, expected, changes):
        if collection == "listings" and self.contended_swaps > 0:
            self.contended_swaps -= 1
            self.collections[collection][doc_id]["availableQuantity"] -= 5
        return await super().compare_and_update(collection, doc_id, expected, changes)


async def _contended_services(identity_provider, listing_fields, contended_swaps, **options):
    services = build_services(ContendedStore(0), identity_provider, clock=fixed_clock, **options)
    await services.resolver.register("farmer-token", "Ramesh Patil", "ramesh@example.com", "farmer")
    await services.resolver.register("buyer-token", "GreenGrow Traders", "orders@greengrow.example", "buyer")
    farmer = await services.resolver.start_session("farmer-token")
    buyer = await services.resolver.start_session("buyer-token")
    listing = await services.catalog.publish(farmer, listing_fields)
    services.engine.storage.store.contended_swaps = contended_swaps
    return services, buyer, listing


@pytest.mark.asyncio
async def test_lost_reservation_race_is_retried(identity_provider, listing_fields):
    services, buyer, listing = await _contended_services(identity_provider, listing_fields, contended_swaps=1)

    contract = await services.engine.propose(buyer, listing.id, quantity=10, price=12.0)

    assert contract.status == ContractStatus.PENDING
    assert await _available(services, listing.id) == 85


@pytest.mark.asyncio
async def test_persistent_contention_fails_without_side_effects(identity_provider, listing_fields):
    services, buyer, listing = await _contended_services(
        identity_provider, listing_fields, contended_swaps=3, max_reservation_attempts=3
    )

    with pytest.raises(UpstreamError):
        await services.engine.propose(buyer, listing.id, quantity=10, price=12.0)

    assert await services.engine.storage.store.query("contracts") == []
    # only the competing writer's takes are visible
    assert await _available(services, listing.id) == 85


class StatusRaceStore(InMemoryDocumentStore):
    """The other party cancels between our read and our status write"""

    race = False

    async def compare_and_update(self, collection, doc_id, expected, changes):
        if collection == "contracts" and self.race:
            self.race = False
            self.collections[collection][doc_id]["status"] = "cancelled"
        return await super().compare_and_update(collection, doc_id, expected, changes)


@pytest.mark.asyncio
async def test_transition_racing_cancel_loses(identity_provider, listing_fields):
    store = StatusRaceStore()
    services = build_services(store, identity_provider, clock=fixed_clock)
    await services.resolver.register("farmer-token", "Ramesh Patil", "ramesh@example.com", "farmer")
    await services.resolver.register("buyer-token", "GreenGrow Traders", "orders@greengrow.example", "buyer")
    farmer = await services.resolver.start_session("farmer-token")
    buyer = await services.resolver.start_session("buyer-token")
    listing = await services.catalog.publish(farmer, listing_fields)
    contract = await services.engine.propose(buyer, listing.id, quantity=10, price=12.0)

    store.race = True
    with pytest.raises(InvalidTransitionError):
        await services.engine.accept(farmer, contract.id)
    assert await _stored_status(services, contract.id) == ContractStatus.CANCELLED


class FailingContractStore(InMemoryDocumentStore):
    async def create(self, collection, fields, doc_id=None):
        if collection == "contracts":
            raise UpstreamError("contracts collection unavailable")
        return await super().create(collection, fields, doc_id)


@pytest.mark.asyncio
async def test_failed_contract_write_returns_reservation(identity_provider, listing_fields):
    services = build_services(FailingContractStore(), identity_provider, clock=fixed_clock)
    await services.resolver.register("farmer-token", "Ramesh Patil", "ramesh@example.com", "farmer")
    await services.resolver.register("buyer-token", "GreenGrow Traders", "orders@greengrow.example", "buyer")
    farmer = await services.resolver.start_session("farmer-token")
    buyer = await services.resolver.start_session("buyer-token")
    listing = await services.catalog.publish(farmer, listing_fields)

    with pytest.raises(UpstreamError):
        await services.engine.propose(buyer, listing.id, quantity=10, price=12.0)
    assert await _available(services, listing.id) == 100


class LockedListingStore(InMemoryDocumentStore):
    """Listing swaps always lose while locked"""

    locked = False

    async def compare_and_update(self, collection, doc_id, expected, changes):
        if collection == "listings" and self.locked:
            return False
        return await super().compare_and_update(collection, doc_id, expected, changes)


@pytest.mark.asyncio
async def test_failed_release_leaves_contract_cancellable(identity_provider, listing_fields):
    store = LockedListingStore()
    services = build_services(store, identity_provider, clock=fixed_clock, max_reservation_attempts=2)
    await services.resolver.register("farmer-token", "Ramesh Patil", "ramesh@example.com", "farmer")
    await services.resolver.register("buyer-token", "GreenGrow Traders", "orders@greengrow.example", "buyer")
    farmer = await services.resolver.start_session("farmer-token")
    buyer = await services.resolver.start_session("buyer-token")
    listing = await services.catalog.publish(farmer, listing_fields)
    contract = await services.engine.propose(buyer, listing.id, quantity=10, price=12.0)
    await services.engine.accept(farmer, contract.id)

    store.locked = True
    with pytest.raises(UpstreamError):
        await services.engine.cancel(buyer, contract.id)
    assert await _stored_status(services, contract.id) == ContractStatus.ACTIVE
    assert await _available(services, listing.id) == 90

    store.locked = False
    cancelled = await services.engine.cancel(buyer, contract.id)
    assert cancelled.status == ContractStatus.CANCELLED
    assert await _available(services, listing.id) == 100


@pytest.mark.asyncio
async def test_snapshot_policy_validates_each_proposal_independently(store, identity_provider, listing_fields):
    services = build_services(store, identity_provider, clock=fixed_clock, allocation_policy="snapshot")
    await services.resolver.register("farmer-token", "Ramesh Patil", "ramesh@example.com", "farmer")
    await services.resolver.register("buyer-token", "GreenGrow Traders", "orders@greengrow.example", "buyer")
    farmer = await services.resolver.start_session("farmer-token")
    buyer = await services.resolver.start_session("buyer-token")
    listing = await services.catalog.publish(farmer, listing_fields)

    first = await services.engine.propose(buyer, listing.id, quantity=60, price=12.0)
    second = await services.engine.propose(buyer, listing.id, quantity=60, price=12.0)

    assert first.reserved_quantity == second.reserved_quantity == 0
    assert await _available(services, listing.id) == 100

    await services.engine.decline(farmer, first.id)
    assert await _available(services, listing.id) == 100


def test_unknown_allocation_policy_is_rejected(store, identity_provider):
    with pytest.raises(ValueError):
        build_services(store, identity_provider, allocation_policy="first-come")


@pytest.mark.asyncio
async def test_signed_out_session_cannot_transition(services, farmer_session, proposed_contract):
    await services.resolver.sign_out(farmer_session)
    with pytest.raises(AuthorizationError):
        await services.engine.accept(farmer_session, proposed_contract.id)
