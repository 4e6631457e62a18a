"""
Demo script for the Contract Farming marketplace (in-memory store)
"""
import asyncio

from contract_farming_models import Role
from contract_farming_services import StaticIdentityProvider, build_services
from contract_farming_storage import InMemoryDocumentStore


async def demo_marketplace():
    services = build_services(
        InMemoryDocumentStore(),
        StaticIdentityProvider({"farmer-token": "farmer-1", "buyer-token": "buyer-1"}),
    )
    await services.resolver.register("farmer-token", "Ramesh Patil", "ramesh@example.com", Role.PRODUCER, "Nashik")
    await services.resolver.register("buyer-token", "FreshFarm Co.", "buy@freshfarm.example", Role.PURCHASER, "Mumbai")
    farmer = await services.resolver.start_session("farmer-token")
    buyer = await services.resolver.start_session("buyer-token")

    print("=" * 60)
    print("DEMO 1: Publish and search")
    print("=" * 60)

    listing = await services.catalog.publish(farmer, {
        "cropName": "Tomato",
        "cropCategory": "Vegetables",
        "availableQuantity": 100,
        "minPrice": 10.0,
        "description": "Vine ripened hybrid tomatoes",
        "location": "Nashik",
        "harvestDate": "2026-11-15",
    })
    await services.catalog.publish(farmer, {
        "cropName": "Alphonso Mango",
        "cropCategory": "Fruits",
        "availableQuantity": 400,
        "minPrice": 80.0,
        "harvestDate": "2027-04-01",
    })

    print(f"\nCreated listing {listing.id}:")
    print(f"  Crop: {listing.crop_name} ({listing.crop_category.value})")
    print(f"  Quantity: {listing.available_quantity} {listing.unit}")
    print(f"  Minimum Price: {listing.min_price} per {listing.unit}")

    results = await services.catalog.search("tomato", "Vegetables")
    print(f"\nSearch 'tomato' in Vegetables: {[item.crop_name for item in results]}")

    print("\n" + "=" * 60)
    print("DEMO 2: Contract lifecycle")
    print("=" * 60)

    contract = await services.engine.propose(buyer, listing.id, quantity=10, price=12.0)
    print(f"\nProposed contract {contract.id}: {contract.quantity} kg at {contract.price}")
    print(f"  Status: {contract.status.value}, Total Value: {contract.total_value}")
    print(f"  Delivery Date: {contract.delivery_date.date()}")

    remaining = await services.catalog.get_listing(listing.id)
    print(f"  Listing now has {remaining.available_quantity} {remaining.unit} available")

    contract = await services.engine.accept(farmer, contract.id)
    print(f"\nFarmer accepted: {contract.status.value}")
    contract = await services.engine.mark_delivered(farmer, contract.id)
    print(f"Farmer marked delivered: {contract.status.value}")

    dashboard = await services.ledger.dashboard(buyer)
    print("\nBuyer dashboard:")
    for status, count in dashboard.counts.items():
        print(f"  {status.value}: {count}")


if __name__ == "__main__":
    asyncio.run(demo_marketplace())
