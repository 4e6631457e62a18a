"""
Main API application for the Contract Farming marketplace
"""
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from contract_farming_api import router as contract_farming_router
from contract_farming_services import (
    ContractFarmingServices, FirebaseIdentityProvider, IdentityProvider, StaticIdentityProvider,
    build_services
)
from contract_farming_storage import create_document_store

logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
logger = logging.getLogger(__name__)


def create_identity_provider(kind: Optional[str] = None) -> IdentityProvider:
    kind = (kind or config.IDENTITY_PROVIDER).lower()
    if kind == "firebase":
        return FirebaseIdentityProvider()
    if kind == "static":
        logger.warning(f"Using static identity provider with {len(config.STATIC_SESSION_TOKENS)} tokens")
        return StaticIdentityProvider(config.STATIC_SESSION_TOKENS)
    raise ValueError(f"Unknown IDENTITY_PROVIDER {kind!r}; expected 'firebase' or 'static'")


def create_app(services: Optional[ContractFarmingServices] = None) -> FastAPI:
    """Build the API; without services, wire them from config"""
    if services is None:
        services = build_services(create_document_store(), create_identity_provider())

    app = FastAPI(title="Contract Farming API", version="1.0.0")
    app.state.services = services

    # Include contract farming routes
    app.include_router(contract_farming_router, prefix="/api")

    # Enable CORS for the web client
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        return {"message": "Contract Farming API", "version": "1.0.0"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
