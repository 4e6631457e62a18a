"""
Contract Farming services

Async components built on ContractFarmingStorage:
- IdentityResolver: session token -> Principal / SessionContext, profile edits
- ListingCatalog: publish and read listings, marketplace search
- ContractNegotiationEngine: proposal and the contract lifecycle
- ContractLedger: per-principal contract views for dashboards

Every mutating call takes an explicit SessionContext; there is no module-level
"current user".
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import firebase_admin
from firebase_admin import auth as firebase_auth
from pydantic import ValidationError as PydanticValidationError

import config
from contract_farming_errors import (
    AuthorizationError, ContractFarmingError, InvalidTransitionError, NotFoundError, UpstreamError,
    ValidationError,
)
from contract_farming_logic import (
    ALL_CATEGORIES, ContractEvent, apply_transition, draft_contract,
    partition_by_status, search_listings, status_counts
)
from contract_farming_models import (
    Contract, ContractDashboard, ContractStatus, CropCategory, Listing, ListingDraft,
    Principal, ProfileUpdate, Role, utcnow
)
from contract_farming_storage import ContractFarmingStorage, DocumentStore, initialize_firebase_app

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _validation_message(error: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
        for err in error.errors()
    )


def _parse_role(role: Union[Role, str]) -> Role:
    """Accept a stored userType ("farmer") or a role name ("producer")"""
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        pass
    try:
        return Role[str(role).upper()]
    except KeyError:
        raise ValidationError(f"Unknown role {role!r}") from None


@dataclass
class SessionContext:
    """An authenticated session; created by IdentityResolver.start_session, closed by sign_out"""
    principal: Principal
    token: Optional[str] = None
    active: bool = field(default=True)

    @property
    def principal_id(self) -> str:
        return self.principal.id

    def require_active(self) -> Principal:
        if not self.active:
            raise AuthorizationError("Session has been signed out")
        return self.principal

    def require_role(self, role: Role) -> Principal:
        principal = self.require_active()
        if principal.role != role:
            raise AuthorizationError(f"This action requires a {role.value} account")
        return principal


class IdentityProvider(ABC):
    """External authentication service"""

    @abstractmethod
    async def authenticate(self, session_token: str) -> Optional[str]:
        """Principal id for a valid session token, None otherwise"""

    @abstractmethod
    async def sign_out(self, principal_id: str) -> None:
        """End the principal's sessions at the provider"""


class FirebaseIdentityProvider(IdentityProvider):
    """Firebase Authentication ID tokens"""

    def __init__(self, app: Optional[firebase_admin.App] = None, check_revoked: bool = True):
        self.app = app if app is not None else initialize_firebase_app()
        self.check_revoked = check_revoked

    async def authenticate(self, session_token):
        if not session_token:
            return None
        try:
            claims = await asyncio.to_thread(
                firebase_auth.verify_id_token, session_token, self.app, self.check_revoked
            )
        except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.UserDisabledError) as e:
            logger.info(f"Rejected session token: {e}")
            return None
        except Exception as e:
            logger.error(f"Identity provider error: {e}")
            raise UpstreamError(f"Identity provider call failed: {e}") from e
        return claims["uid"]

    async def sign_out(self, principal_id):
        try:
            await asyncio.to_thread(firebase_auth.revoke_refresh_tokens, principal_id, self.app)
        except Exception as e:
            logger.error(f"Error signing out {principal_id}: {e}")
            raise UpstreamError(f"Identity provider sign-out failed: {e}") from e


class StaticIdentityProvider(IdentityProvider):
    """Fixed token table, for local runs and tests"""

    def __init__(self, tokens: Optional[Mapping[str, str]] = None):
        self.tokens: Dict[str, str] = dict(tokens or {})

    async def authenticate(self, session_token):
        return self.tokens.get(session_token) if session_token else None

    async def sign_out(self, principal_id):
        self.tokens = {token: pid for token, pid in self.tokens.items() if pid != principal_id}


class IdentityResolver:
    """Resolves sessions to principals and owns profile records"""

    def __init__(self, provider: IdentityProvider, storage: ContractFarmingStorage, clock: Clock = utcnow):
        self.provider = provider
        self.storage = storage
        self.clock = clock

    async def resolve(self, session_token: Optional[str]) -> Optional[Principal]:
        """Principal for the token, or None when unauthenticated or not yet registered"""
        principal_id = await self.provider.authenticate(session_token)
        if principal_id is None:
            return None
        return await self.storage.get_principal(principal_id)

    async def start_session(self, session_token: Optional[str]) -> Optional[SessionContext]:
        principal = await self.resolve(session_token)
        if principal is None:
            return None
        return SessionContext(principal=principal, token=session_token)

    async def register(
        self,
        session_token: str,
        full_name: str,
        email: str,
        role: Union[Role, str],
        location: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Principal:
        """Create the profile for a freshly authenticated principal"""
        principal_id = await self.provider.authenticate(session_token)
        if principal_id is None:
            raise AuthorizationError("Not authenticated")
        if await self.storage.get_principal(principal_id) is not None:
            raise ValidationError(f"Profile {principal_id} already exists")
        try:
            principal = Principal(
                id=principal_id,
                full_name=full_name,
                email=email,
                role=role,
                location=location,
                phone=phone,
                created_at=self.clock(),
            )
        except PydanticValidationError as e:
            raise ValidationError(_validation_message(e)) from e
        return await self.storage.create_principal(principal)

    async def update_profile(self, ctx: SessionContext, principal_id: str, fields: Mapping[str, Any]) -> Principal:
        """Change display name, location or phone of the caller's own profile"""
        caller = ctx.require_active()
        if caller.id != principal_id:
            raise AuthorizationError(f"Principal {caller.id} cannot edit profile {principal_id}")
        try:
            update = ProfileUpdate.model_validate(dict(fields))
        except PydanticValidationError as e:
            raise ValidationError(_validation_message(e)) from e

        changes = update.model_dump(by_alias=True, exclude_unset=True)
        if not changes:
            raise ValidationError("No profile fields to update")

        current = await self.storage.get_principal(principal_id)
        if current is None:
            raise NotFoundError(f"Profile {principal_id} not found")
        try:
            merged = Principal.model_validate(
                {**current.model_dump(by_alias=True), **changes, "updatedAt": self.clock()}
            )
        except PydanticValidationError as e:
            raise ValidationError(_validation_message(e)) from e
        record = merged.model_dump(by_alias=True, mode="json")
        fields = {name: record[name] for name in [*changes, "updatedAt"]}

        principal = await self.storage.update_principal(principal_id, fields)
        ctx.principal = principal
        return principal

    async def sign_out(self, ctx: SessionContext) -> None:
        if not ctx.active:
            return
        await self.provider.sign_out(ctx.principal_id)
        ctx.active = False
        logger.info(f"Signed out {ctx.principal_id}")


class ListingCatalog:
    """Farmer-published availability"""

    def __init__(self, storage: ContractFarmingStorage, clock: Clock = utcnow):
        self.storage = storage
        self.clock = clock

    async def publish(self, ctx: SessionContext, fields: Mapping[str, Any]) -> Listing:
        farmer = ctx.require_role(Role.PRODUCER)
        try:
            draft = ListingDraft.model_validate(dict(fields))
        except PydanticValidationError as e:
            raise ValidationError(_validation_message(e)) from e

        listing = Listing(
            **draft.model_dump(),
            farmer_id=farmer.id,
            farmer_name=farmer.full_name,
            created_at=self.clock(),
        )
        return await self.storage.create_listing(listing)

    async def all_listings(self) -> List[Listing]:
        """Every listing in the store; order is not guaranteed"""
        return await self.storage.get_all_listings()

    async def get_listing(self, listing_id: str) -> Listing:
        listing = await self.storage.get_listing(listing_id)
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found")
        return listing

    async def listings_for(self, ctx: SessionContext) -> List[Listing]:
        farmer = ctx.require_role(Role.PRODUCER)
        return await self.storage.get_listings_for_farmer(farmer.id)

    async def search(self, query: str = "", category: Union[str, CropCategory] = ALL_CATEGORIES) -> List[Listing]:
        return search_listings(await self.all_listings(), query, category)


class ContractNegotiationEngine:
    """Contract proposal and lifecycle transitions"""

    def __init__(
        self,
        storage: ContractFarmingStorage,
        delivery_window_days: int = config.DELIVERY_WINDOW_DAYS,
        allocation_policy: str = config.ALLOCATION_POLICY,
        cancel_policy: str = config.CANCEL_POLICY,
        max_reservation_attempts: int = config.RESERVATION_MAX_ATTEMPTS,
        clock: Clock = utcnow,
    ):
        if allocation_policy not in ("reserve", "snapshot"):
            raise ValueError(f"Unknown allocation policy {allocation_policy!r}")
        self.storage = storage
        self.delivery_window_days = delivery_window_days
        self.allocation_policy = allocation_policy
        self.cancel_policy = cancel_policy
        self.max_reservation_attempts = max(1, max_reservation_attempts)
        self.clock = clock

    async def propose(self, ctx: SessionContext, listing_id: str, quantity: float, price: float) -> Contract:
        """
        Create a pending contract against a listing.

        With the "reserve" policy the quantity is taken off the listing with a
        compare-and-swap; losing the race re-reads the listing and validates
        again. With "snapshot" the listing is only read.
        """
        buyer = ctx.require_active()

        for attempt in range(1, self.max_reservation_attempts + 1):
            listing = await self.storage.get_listing(listing_id)
            if listing is None:
                raise NotFoundError(f"Listing {listing_id} not found")
            contract = draft_contract(
                listing, buyer, quantity, price,
                now=self.clock(),
                delivery_window_days=self.delivery_window_days,
            )
            if self.allocation_policy == "snapshot":
                return await self.storage.create_contract(contract)

            reserved = await self.storage.swap_available_quantity(
                listing.id, listing.available_quantity, listing.available_quantity - quantity
            )
            if reserved:
                contract.reserved_quantity = quantity
                return await self._create_reserved(contract)
            logger.warning(
                f"Listing {listing_id} changed during proposal by {buyer.id} "
                f"(attempt {attempt}/{self.max_reservation_attempts}), retrying"
            )

        raise UpstreamError(f"Listing {listing_id} is under contention, try again")

    async def _create_reserved(self, contract: Contract) -> Contract:
        try:
            return await self.storage.create_contract(contract)
        except ContractFarmingError:
            logger.warning(
                f"Contract creation failed, returning {contract.reserved_quantity} to listing {contract.listing_id}"
            )
            await self._release(contract)
            raise

    async def get_contract(self, ctx: SessionContext, contract_id: str) -> Contract:
        principal = ctx.require_active()
        contract = await self.storage.get_contract(contract_id)
        if contract is None:
            raise NotFoundError(f"Contract {contract_id} not found")
        if contract.party_role(principal.id) is None:
            raise AuthorizationError(f"Principal {principal.id} is not a party to contract {contract_id}")
        return contract

    async def accept(self, ctx: SessionContext, contract_id: str) -> Contract:
        return await self._transition(ctx, contract_id, ContractEvent.ACCEPT)

    async def decline(self, ctx: SessionContext, contract_id: str) -> Contract:
        return await self._transition(ctx, contract_id, ContractEvent.DECLINE)

    async def mark_delivered(self, ctx: SessionContext, contract_id: str) -> Contract:
        return await self._transition(ctx, contract_id, ContractEvent.MARK_DELIVERED)

    async def cancel(self, ctx: SessionContext, contract_id: str) -> Contract:
        return await self._transition(ctx, contract_id, ContractEvent.CANCEL)

    async def _transition(self, ctx: SessionContext, contract_id: str, event: ContractEvent) -> Contract:
        contract = await self.get_contract(ctx, contract_id)
        updated = apply_transition(contract, event, ctx.principal_id, self.clock(), self.cancel_policy)

        if not await self.storage.save_transition(updated, from_status=contract.status):
            current = await self.storage.get_contract(contract_id)
            current_status = current.status.value if current else "missing"
            raise InvalidTransitionError(
                f"Contract {contract_id} changed to {current_status} before {event.value} could be applied"
            )

        if updated.status == ContractStatus.CANCELLED and updated.reserved_quantity > 0:
            try:
                await self._release(updated)
            except ContractFarmingError:
                await self._restore(contract)
                raise
        return updated

    async def _restore(self, contract: Contract) -> None:
        """Put a cancelled contract back in its previous state after a failed release"""
        if await self.storage.save_transition(contract, from_status=ContractStatus.CANCELLED):
            logger.warning(f"Release failed, contract {contract.id} restored to {contract.status.value}")
        else:
            logger.error(
                f"Contract {contract.id} is cancelled but {contract.reserved_quantity} "
                f"was not returned to listing {contract.listing_id}"
            )

    async def _release(self, contract: Contract) -> None:
        """Give a contract's reserved quantity back to its listing"""
        for _ in range(self.max_reservation_attempts):
            listing = await self.storage.get_listing(contract.listing_id)
            if listing is None:
                logger.error(f"Listing {contract.listing_id} vanished; cannot release contract {contract.id}")
                raise NotFoundError(f"Listing {contract.listing_id} not found")
            if await self.storage.swap_available_quantity(
                listing.id, listing.available_quantity, listing.available_quantity + contract.reserved_quantity
            ):
                return
        logger.error(f"Could not release {contract.reserved_quantity} to listing {contract.listing_id}")
        raise UpstreamError(f"Listing {contract.listing_id} is under contention, quantity not released")


class ContractLedger:
    """Read-only contract views per principal"""

    def __init__(self, storage: ContractFarmingStorage):
        self.storage = storage

    async def contracts_for(self, principal_id: str, role: Union[Role, str]) -> List[Contract]:
        role = _parse_role(role)
        if role == Role.PRODUCER:
            return await self.storage.get_contracts_for_farmer(principal_id)
        return await self.storage.get_contracts_for_buyer(principal_id)

    async def dashboard(self, ctx: SessionContext) -> ContractDashboard:
        principal = ctx.require_active()
        contracts = await self.contracts_for(principal.id, principal.role)
        return ContractDashboard(
            principal_id=principal.id,
            role=principal.role,
            counts=status_counts(contracts),
            contracts=partition_by_status(contracts),
        )


@dataclass
class ContractFarmingServices:
    """The components one deployment wires together"""
    resolver: IdentityResolver
    catalog: ListingCatalog
    engine: ContractNegotiationEngine
    ledger: ContractLedger


def build_services(
    store: DocumentStore,
    provider: IdentityProvider,
    clock: Clock = utcnow,
    **engine_options,
) -> ContractFarmingServices:
    """Wire the services over one store; engine_options override the config policies"""
    storage = ContractFarmingStorage(store)
    return ContractFarmingServices(
        resolver=IdentityResolver(provider, storage, clock=clock),
        catalog=ListingCatalog(storage, clock=clock),
        engine=ContractNegotiationEngine(storage, clock=clock, **engine_options),
        ledger=ContractLedger(storage),
    )
