from datetime import date, datetime, timezone

import pytest
import pytest_asyncio

from contract_farming_models import Contract, CropCategory, Listing, Principal, Role
from contract_farming_services import StaticIdentityProvider, build_services
from contract_farming_storage import InMemoryDocumentStore

FIXED_NOW = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)

TOKENS = {
    "farmer-token": "farmer-1",
    "other-farmer-token": "farmer-2",
    "buyer-token": "buyer-1",
    "other-buyer-token": "buyer-2",
}


def fixed_clock():
    return FIXED_NOW


@pytest.fixture
def sample_farmer():
    return Principal(
        id="farmer-1",
        full_name="Ramesh Patil",
        email="ramesh@example.com",
        role=Role.PRODUCER,
        location="Nashik",
    )


@pytest.fixture
def sample_buyer():
    return Principal(
        id="buyer-1",
        full_name="GreenGrow Traders",
        email="orders@greengrow.example",
        role=Role.PURCHASER,
        location="Pune",
        phone="+91-9999999999",
    )


@pytest.fixture
def sample_listing():
    return Listing(
        id="listing-1",
        farmer_id="farmer-1",
        farmer_name="Ramesh Patil",
        crop_name="Tomato",
        crop_category=CropCategory.VEGETABLES,
        available_quantity=100,
        min_price=10.0,
        description="Vine ripened",
        location="Nashik",
        harvest_date=date(2026, 11, 15),
    )


@pytest.fixture
def pending_contract():
    return Contract(
        id="contract-1",
        listing_id="listing-1",
        farmer_id="farmer-1",
        farmer_name="Ramesh Patil",
        buyer_id="buyer-1",
        buyer_name="GreenGrow Traders",
        crop_name="Tomato",
        quantity=10,
        price=12.0,
        created_at=FIXED_NOW,
        delivery_date=datetime(2026, 10, 31, 9, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def listing_fields():
    return {
        "cropName": "Tomato",
        "cropCategory": "Vegetables",
        "availableQuantity": 100,
        "minPrice": 10.0,
        "description": "Vine ripened hybrid tomatoes",
        "location": "Nashik",
        "harvestDate": "2026-11-15",
    }


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def identity_provider():
    return StaticIdentityProvider(TOKENS)


@pytest.fixture
def services(store, identity_provider):
    return build_services(store, identity_provider, clock=fixed_clock)


async def _register_and_sign_in(services, token, full_name, email, role):
    await services.resolver.register(token, full_name, email, role)
    return await services.resolver.start_session(token)


@pytest_asyncio.fixture
async def farmer_session(services):
    return await _register_and_sign_in(services, "farmer-token", "Ramesh Patil", "ramesh@example.com", Role.PRODUCER)


@pytest_asyncio.fixture
async def other_farmer_session(services):
    return await _register_and_sign_in(services, "other-farmer-token", "Sunita Rao", "sunita@example.com", Role.PRODUCER)


@pytest_asyncio.fixture
async def buyer_session(services):
    return await _register_and_sign_in(
        services, "buyer-token", "GreenGrow Traders", "orders@greengrow.example", Role.PURCHASER
    )


@pytest_asyncio.fixture
async def other_buyer_session(services):
    return await _register_and_sign_in(services, "other-buyer-token", "FreshFarm Co.", "buy@freshfarm.example", Role.PURCHASER)


@pytest_asyncio.fixture
async def published_listing(services, farmer_session, listing_fields):
    return await services.catalog.publish(farmer_session, listing_fields)


@pytest_asyncio.fixture
async def proposed_contract(services, buyer_session, published_listing):
    return await services.engine.propose(buyer_session, published_listing.id, quantity=10, price=12.0)

