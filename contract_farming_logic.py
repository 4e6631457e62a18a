"""
Contract Farming - Business Logic

Pure functions over model snapshots: marketplace search, proposal validation,
the contract state machine and ledger partitioning. Nothing here touches the
document store.
"""
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Union

from contract_farming_errors import AuthorizationError, InvalidTransitionError, ValidationError
from contract_farming_models import Contract, ContractStatus, CropCategory, Listing, Principal, Role

ALL_CATEGORIES = "all"


def search_listings(
    listings: Iterable[Listing],
    query: str = "",
    category: Union[str, CropCategory] = ALL_CATEGORIES,
) -> List[Listing]:
    """
    Filter a catalog snapshot for the marketplace.

    Rules:
    1. A non-empty query must appear (case-insensitive) in the crop name,
       the farmer's name or the description
    2. Unless category is "all", the listing category must equal it

    Both rules are ANDed and the input order is kept.
    """
    wanted = _parse_category(category)
    needle = (query or "").lower()

    matched = []
    for listing in listings:
        if needle and not (
            needle in listing.crop_name.lower()
            or needle in listing.farmer_name.lower()
            or needle in listing.description.lower()
        ):
            continue
        if wanted is not None and listing.crop_category != wanted:
            continue
        matched.append(listing)
    return matched


def _parse_category(category: Union[str, CropCategory, None]) -> Optional[CropCategory]:
    if category is None or category == ALL_CATEGORIES:
        return None
    try:
        return CropCategory(category)
    except ValueError:
        raise ValidationError(
            f"Unknown crop category {category!r}; expected 'all' or one of "
            f"{', '.join(c.value for c in CropCategory)}"
        ) from None


def draft_contract(
    listing: Listing,
    buyer: Principal,
    quantity: float,
    price: float,
    now: datetime,
    delivery_window_days: int,
) -> Contract:
    """
    Build a pending contract proposal from a listing snapshot.

    Checks:
    - only buyers propose
    - 0 < quantity <= listing.available_quantity
    - price >= listing.min_price

    Farmer id/name and crop name are copied from the listing; the contract
    does not look at the listing again after this.
    """
    if buyer.role != Role.PURCHASER:
        raise AuthorizationError(f"Only buyers can propose contracts (principal {buyer.id} is a {buyer.role.value})")
    for name, value in (("Quantity", quantity), ("Price", price)):
        if value is not None and not math.isfinite(value):
            raise ValidationError(f"{name} must be a finite number (got {value})")
    if quantity is None or not quantity > 0:
        raise ValidationError(f"Quantity must be greater than 0 (got {quantity})")
    if quantity > listing.available_quantity:
        raise ValidationError(
            f"Quantity {quantity} exceeds the {listing.available_quantity} {listing.unit} "
            f"available on listing {listing.id}"
        )
    if price is None or not price >= listing.min_price:
        raise ValidationError(
            f"Price {price} is below the minimum price {listing.min_price} for listing {listing.id}"
        )

    return Contract(
        listing_id=listing.id,
        farmer_id=listing.farmer_id,
        farmer_name=listing.farmer_name,
        buyer_id=buyer.id,
        buyer_name=buyer.full_name,
        crop_name=listing.crop_name,
        quantity=quantity,
        price=price,
        status=ContractStatus.PENDING,
        created_at=now,
        delivery_date=now + timedelta(days=delivery_window_days),
    )


class ContractEvent(str, Enum):
    """Events accepted by the contract state machine"""
    ACCEPT = "accept"
    DECLINE = "decline"
    MARK_DELIVERED = "mark_delivered"
    CANCEL = "cancel"


TRANSITIONS: Dict[tuple, ContractStatus] = {
    (ContractStatus.PENDING, ContractEvent.ACCEPT): ContractStatus.ACTIVE,
    (ContractStatus.PENDING, ContractEvent.DECLINE): ContractStatus.CANCELLED,
    (ContractStatus.ACTIVE, ContractEvent.MARK_DELIVERED): ContractStatus.COMPLETED,
    (ContractStatus.PENDING, ContractEvent.CANCEL): ContractStatus.CANCELLED,
    (ContractStatus.ACTIVE, ContractEvent.CANCEL): ContractStatus.CANCELLED,
}

CANCEL_POLICIES: Dict[str, FrozenSet[Role]] = {
    "either": frozenset({Role.PRODUCER, Role.PURCHASER}),
    "farmer": frozenset({Role.PRODUCER}),
    "buyer": frozenset({Role.PURCHASER}),
}


def authorized_roles(event: ContractEvent, cancel_policy: str = "either") -> FrozenSet[Role]:
    if event == ContractEvent.CANCEL:
        try:
            return CANCEL_POLICIES[cancel_policy]
        except KeyError:
            raise ValueError(f"Unknown cancel policy {cancel_policy!r}") from None
    return frozenset({Role.PRODUCER})


def apply_transition(
    contract: Contract,
    event: ContractEvent,
    actor_id: str,
    now: datetime,
    cancel_policy: str = "either",
) -> Contract:
    """
    Return a copy of the contract after the event; the input is never modified.

    Raises AuthorizationError when the actor is not a party to the contract and
    InvalidTransitionError for any (status, event, role) not in TRANSITIONS.
    """
    role = contract.party_role(actor_id)
    if role is None:
        raise AuthorizationError(f"Principal {actor_id} is not a party to contract {contract.id}")

    target = TRANSITIONS.get((contract.status, event))
    if target is None:
        raise InvalidTransitionError(
            f"Cannot {event.value} contract {contract.id} while it is {contract.status.value}"
        )
    if role not in authorized_roles(event, cancel_policy):
        raise InvalidTransitionError(
            f"A {role.value} cannot {event.value} contract {contract.id}"
        )

    return contract.model_copy(update={"status": target, "updated_at": now})


def partition_by_status(contracts: Iterable[Contract]) -> Dict[ContractStatus, List[Contract]]:
    """Group contracts by status, keeping their relative order; every status is a key"""
    groups: Dict[ContractStatus, List[Contract]] = {status: [] for status in ContractStatus}
    for contract in contracts:
        groups[contract.status].append(contract)
    return groups


def status_counts(contracts: Iterable[Contract]) -> Dict[ContractStatus, int]:
    return {status: len(group) for status, group in partition_by_status(contracts).items()}
