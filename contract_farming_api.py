"""
FastAPI endpoints for the Contract Farming marketplace
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from contract_farming_errors import (
    AuthorizationError, ContractFarmingError, InvalidTransitionError, NotFoundError,
    UpstreamError, ValidationError
)
from contract_farming_models import Contract, ContractDashboard, Listing, Principal, Role
from contract_farming_services import ContractFarmingServices, SessionContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/contract-farming", tags=["contract-farming"])

ERROR_STATUS_CODES = {
    ValidationError: 422,
    AuthorizationError: 403,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    UpstreamError: 502,
}


class RegistrationRequest(BaseModel):
    full_name: str = Field(..., alias="fullName")
    email: str
    role: Role = Field(..., alias="userType")
    location: Optional[str] = None
    phone: Optional[str] = None


class ProposalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False)

    listing_id: str = Field(..., alias="listingId")
    quantity: float
    price: float


def _http_error(e: ContractFarmingError) -> HTTPException:
    status_code = ERROR_STATUS_CODES.get(type(e), 500)
    if status_code >= 500:
        logger.error(f"{type(e).__name__}: {e.message}")
    else:
        logger.info(f"{type(e).__name__}: {e.message}")
    return HTTPException(status_code=status_code, detail=e.message)


def get_services(request: Request) -> ContractFarmingServices:
    return request.app.state.services


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


async def get_session(
    token: Optional[str] = Depends(bearer_token),
    services: ContractFarmingServices = Depends(get_services),
) -> SessionContext:
    try:
        ctx = await services.resolver.start_session(token)
    except ContractFarmingError as e:
        raise _http_error(e) from e
    if ctx is None:
        raise HTTPException(status_code=401, detail="Not signed in or profile not registered")
    return ctx


@router.post("/register", response_model=Principal)
async def register(
    request: RegistrationRequest,
    token: Optional[str] = Depends(bearer_token),
    services: ContractFarmingServices = Depends(get_services),
):
    """
    Create the profile for a signed-in user.

    Example:
    {
        "fullName": "Ramesh Patil",
        "email": "ramesh@example.com",
        "userType": "farmer",
        "location": "Nashik, Maharashtra"
    }
    """
    try:
        return await services.resolver.register(
            token,
            full_name=request.full_name,
            email=request.email,
            role=request.role,
            location=request.location,
            phone=request.phone,
        )
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.get("/me", response_model=Principal)
async def me(ctx: SessionContext = Depends(get_session)):
    return ctx.principal


@router.patch("/users/{principal_id}", response_model=Principal)
async def update_profile(
    principal_id: str,
    fields: Dict[str, Any] = Body(...),
    ctx: SessionContext = Depends(get_session),
    services: ContractFarmingServices = Depends(get_services),
):
    """Update fullName, location or phone of the caller's own profile"""
    try:
        return await services.resolver.update_profile(ctx, principal_id, fields)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.post("/sign-out")
async def sign_out(
    ctx: SessionContext = Depends(get_session),
    services: ContractFarmingServices = Depends(get_services),
):
    try:
        await services.resolver.sign_out(ctx)
    except ContractFarmingError as e:
        raise _http_error(e) from e
    return {"status": "signed_out"}


@router.post("/listings", response_model=Listing)
async def publish_listing(
    fields: Dict[str, Any] = Body(...),
    ctx: SessionContext = Depends(get_session),
    services: ContractFarmingServices = Depends(get_services),
):
    """
    Publish a listing (farmers only).

    Example:
    {
        "cropName": "Tomato",
        "cropCategory": "Vegetables",
        "availableQuantity": 500,
        "minPrice": 30.0,
        "description": "Hybrid, vine ripened",
        "location": "Pune",
        "harvestDate": "2026-11-15"
    }
    """
    try:
        return await services.catalog.publish(ctx, fields)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.get("/listings", response_model=List[Listing])
async def search_marketplace(
    q: str = "",
    category: str = "all",
    services: ContractFarmingServices = Depends(get_services),
):
    """Marketplace search over crop name, farmer name and description"""
    try:
        return await services.catalog.search(q, category)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.get("/listings/mine", response_model=List[Listing])
async def my_listings(
    ctx: SessionContext = Depends(get_session),
    services: ContractFarmingServices = Depends(get_services),
):
    try:
        return await services.catalog.listings_for(ctx)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.get("/listings/{listing_id}", response_model=Listing)
async def get_listing(listing_id: str, services: ContractFarmingServices = Depends(get_services)):
    try:
        return await services.catalog.get_listing(listing_id)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.post("/contracts", response_model=Contract)
async def propose_contract(
    request: ProposalRequest,
    ctx: SessionContext = Depends(get_session),
    services: ContractFarmingServices = Depends(get_services),
):
    """
    Propose a contract on a listing (buyers only).

    Example:
    {
        "listingId": "abc123",
        "quantity": 10,
        "price": 12.0
    }
    """
    try:
        return await services.engine.propose(ctx, request.listing_id, request.quantity, request.price)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.get("/contracts/{contract_id}", response_model=Contract)
async def get_contract(
    contract_id: str,
    ctx: SessionContext = Depends(get_session),
    services: ContractFarmingServices = Depends(get_services),
):
    try:
        return await services.engine.get_contract(ctx, contract_id)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.post("/contracts/{contract_id}/accept", response_model=Contract)
async def accept_contract(
    contract_id: str,
    ctx: SessionContext = Depends(get_session),
    services: ContractFarmingServices = Depends(get_services),
):
    try:
        return await services.engine.accept(ctx, contract_id)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.post("/contracts/{contract_id}/decline", response_model=Contract)
async def decline_contract(
    contract_id: str,
    ctx: SessionContext = Depends(get_session),
    services: ContractFarmingServices = Depends(get_services),
):
    try:
        return await services.engine.decline(ctx, contract_id)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.post("/contracts/{contract_id}/deliver", response_model=Contract)
async def mark_contract_delivered(
    contract_id: str,
    ctx: SessionContext = Depends(get_session),
    services: ContractFarmingServices = Depends(get_services),
):
    try:
        return await services.engine.mark_delivered(ctx, contract_id)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.post("/contracts/{contract_id}/cancel", response_model=Contract)
async def cancel_contract(
    contract_id: str,
    ctx: SessionContext = Depends(get_session),
    services: ContractFarmingServices = Depends(get_services),
):
    try:
        return await services.engine.cancel(ctx, contract_id)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.get("/dashboard", response_model=ContractDashboard)
async def dashboard(
    ctx: SessionContext = Depends(get_session),
    services: ContractFarmingServices = Depends(get_services),
):
    """Contract counts and lists per status for the signed-in farmer or buyer"""
    try:
        return await services.ledger.dashboard(ctx)
    except ContractFarmingError as e:
        raise _http_error(e) from e


@router.get("/health")
async def health_check(services: ContractFarmingServices = Depends(get_services)):
    """Health check endpoint"""
    try:
        listings_count = len(await services.catalog.all_listings())
        return {"status": "healthy", "listings_count": listings_count}
    except ContractFarmingError as e:
        return {"status": "degraded", "error": e.message}
