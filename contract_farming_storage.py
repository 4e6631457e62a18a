"""
Document store access for the Contract Farming marketplace

Two layers:
- DocumentStore: the keyed-collection contract the core needs
  (create/get/query/update plus a single-document compare-and-update), with an
  in-memory implementation and a Firebase Firestore implementation
- ContractFarmingStorage: typed access to the users, listings and contracts
  collections; every record read from the store is validated into its model here
"""
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Type, TypeVar

import firebase_admin
from firebase_admin import credentials, firestore_async
from pydantic import BaseModel, ValidationError as PydanticValidationError

import config
from contract_farming_errors import ContractFarmingError, NotFoundError, UpstreamError
from contract_farming_models import Contract, ContractStatus, Listing, Principal

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class DocumentStore(ABC):
    """Keyed collections of flat records addressed by opaque string ids"""

    @abstractmethod
    async def create(self, collection: str, fields: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        """Store a new record and return its id (generated unless doc_id is given)"""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the record or None"""

    @abstractmethod
    async def query(self, collection: str, field: Optional[str] = None, value: Any = None) -> List[Dict[str, Any]]:
        """Records whose field equals value (all records when field is None), each with an 'id' key"""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge fields into an existing record; NotFoundError when absent"""

    @abstractmethod
    async def compare_and_update(
        self, collection: str, doc_id: str, expected: Dict[str, Any], changes: Dict[str, Any]
    ) -> bool:
        """
        Apply changes only if every expected field still holds its expected value.
        Returns False, writing nothing, when the record has moved on.
        """


class InMemoryDocumentStore(DocumentStore):
    """Process-local store for development, demos and tests. Data does not persist."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(name, {})

    async def create(self, collection, fields, doc_id=None):
        docs = self._collection(collection)
        doc_id = doc_id or uuid.uuid4().hex
        docs[doc_id] = dict(fields)
        return doc_id

    async def get(self, collection, doc_id):
        record = self._collection(collection).get(doc_id)
        return dict(record) if record is not None else None

    async def query(self, collection, field=None, value=None):
        return [
            {**record, "id": doc_id}
            for doc_id, record in self._collection(collection).items()
            if field is None or record.get(field) == value
        ]

    async def update(self, collection, doc_id, fields):
        docs = self._collection(collection)
        if doc_id not in docs:
            raise NotFoundError(f"No document {doc_id} in {collection}")
        docs[doc_id].update(fields)

    async def compare_and_update(self, collection, doc_id, expected, changes):
        # No await between the check and the write, so this is atomic on the event loop
        docs = self._collection(collection)
        record = docs.get(doc_id)
        if record is None:
            raise NotFoundError(f"No document {doc_id} in {collection}")
        if any(record.get(key) != value for key, value in expected.items()):
            return False
        record.update(changes)
        return True


def initialize_firebase_app() -> firebase_admin.App:
    """Initialize Firebase Admin SDK once and return the default app"""
    # Check if Firebase is already initialized
    try:
        app = firebase_admin.get_app()
        logger.info("Firebase already initialized")
        return app
    except ValueError:
        pass

    # Option 1: Use service account JSON file
    firebase_credentials_path = config.FIREBASE_CREDENTIALS_PATH
    if firebase_credentials_path and os.path.exists(firebase_credentials_path):
        cred = credentials.Certificate(firebase_credentials_path)
        app = firebase_admin.initialize_app(cred)
        logger.info(f"Firebase initialized with credentials from {firebase_credentials_path}")
    elif config.FIREBASE_CREDENTIALS_JSON:
        # Option 2: Use environment variable with JSON string
        cred = credentials.Certificate(json.loads(config.FIREBASE_CREDENTIALS_JSON))
        app = firebase_admin.initialize_app(cred)
        logger.info("Firebase initialized with credentials from environment variable")
    else:
        # Option 3: Use default credentials (for Google Cloud environments)
        try:
            app = firebase_admin.initialize_app()
            logger.info("Firebase initialized with default credentials")
        except Exception as e:
            logger.error(f"Failed to initialize Firebase: {e}")
            raise UpstreamError(
                "Firebase initialization failed. Please set FIREBASE_CREDENTIALS_PATH "
                "or FIREBASE_CREDENTIALS_JSON environment variable, or use default credentials."
            ) from e
    return app


@contextmanager
def _firestore_call(operation: str):
    """Report Firestore failures as UpstreamError; the core's own errors pass through"""
    try:
        yield
    except ContractFarmingError:
        raise
    except Exception as e:
        logger.error(f"Firestore {operation} failed: {e}")
        raise UpstreamError(f"Document store {operation} failed: {e}") from e


class FirestoreDocumentStore(DocumentStore):
    """Firebase Firestore backed store (async client)"""

    def __init__(self, db=None):
        self.db = db if db is not None else firestore_async.client(initialize_firebase_app())
        logger.info("FirestoreDocumentStore initialized")

    async def create(self, collection, fields, doc_id=None):
        with _firestore_call(f"create in {collection}"):
            if doc_id:
                await self.db.collection(collection).document(doc_id).set(fields)
                return doc_id
            _, doc_ref = await self.db.collection(collection).add(fields)
            return doc_ref.id

    async def get(self, collection, doc_id):
        with _firestore_call(f"get {collection}/{doc_id}"):
            doc = await self.db.collection(collection).document(doc_id).get()
            return doc.to_dict() if doc.exists else None

    async def query(self, collection, field=None, value=None):
        with _firestore_call(f"query on {collection}"):
            query = self.db.collection(collection)
            if field is not None:
                query = query.where(field, "==", value)
            return [{**doc.to_dict(), "id": doc.id} async for doc in query.stream()]

    async def update(self, collection, doc_id, fields):
        with _firestore_call(f"update {collection}/{doc_id}"):
            doc_ref = self.db.collection(collection).document(doc_id)
            doc = await doc_ref.get()
            if not doc.exists:
                raise NotFoundError(f"No document {doc_id} in {collection}")
            await doc_ref.update(fields)

    async def compare_and_update(self, collection, doc_id, expected, changes):
        doc_ref = self.db.collection(collection).document(doc_id)

        @firestore_async.async_transactional
        async def _apply(transaction):
            snapshot = await doc_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise NotFoundError(f"No document {doc_id} in {collection}")
            record = snapshot.to_dict()
            if any(record.get(key) != value for key, value in expected.items()):
                return False
            transaction.update(doc_ref, changes)
            return True

        with _firestore_call(f"compare-and-update {collection}/{doc_id}"):
            return await _apply(self.db.transaction())


def create_document_store(kind: Optional[str] = None) -> DocumentStore:
    """Build the store named by config.DOCUMENT_STORE (or kind)"""
    kind = (kind or config.DOCUMENT_STORE).lower()
    if kind == "firestore":
        return FirestoreDocumentStore()
    if kind == "memory":
        logger.warning("Using in-memory document store. Data will not persist.")
        return InMemoryDocumentStore()
    raise ValueError(f"Unknown DOCUMENT_STORE {kind!r}; expected 'memory' or 'firestore'")


def _model_to_dict(model: BaseModel) -> Dict[str, Any]:
    """Model -> store record: camelCase keys, ISO-8601 timestamps, no id, no derived fields"""
    return model.model_dump(by_alias=True, mode="json", exclude={"id", "total_value"})


def _dict_to_model(model_cls: Type[ModelT], doc_id: str, data: Dict[str, Any]) -> ModelT:
    """Store record -> model; malformed records never get past this point"""
    data = dict(data)
    data["id"] = doc_id
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        logger.error(f"Malformed {model_cls.__name__} record {doc_id}: {e}")
        raise UpstreamError(f"Stored {model_cls.__name__} {doc_id} failed validation") from e


class ContractFarmingStorage:
    """Typed access to users, listings and contracts"""

    def __init__(
        self,
        store: DocumentStore,
        users_collection: str = config.USERS_COLLECTION,
        listings_collection: str = config.LISTINGS_COLLECTION,
        contracts_collection: str = config.CONTRACTS_COLLECTION,
    ):
        self.store = store
        self.users_collection = users_collection
        self.listings_collection = listings_collection
        self.contracts_collection = contracts_collection

    # Principals
    async def create_principal(self, principal: Principal) -> Principal:
        await self.store.create(self.users_collection, _model_to_dict(principal), doc_id=principal.id)
        logger.info(f"Created {principal.role.value} profile {principal.id}")
        return principal

    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        data = await self.store.get(self.users_collection, principal_id)
        if data is None:
            return None
        return _dict_to_model(Principal, principal_id, data)

    async def update_principal(self, principal_id: str, fields: Dict[str, Any]) -> Principal:
        await self.store.update(self.users_collection, principal_id, fields)
        logger.info(f"Updated profile {principal_id}: {sorted(fields)}")
        principal = await self.get_principal(principal_id)
        if principal is None:
            raise NotFoundError(f"Profile {principal_id} not found")
        return principal

    # Listings
    async def create_listing(self, listing: Listing) -> Listing:
        listing.id = await self.store.create(self.listings_collection, _model_to_dict(listing))
        logger.info(f"Created listing {listing.id} for farmer {listing.farmer_id}")
        return listing

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        data = await self.store.get(self.listings_collection, listing_id)
        if data is None:
            return None
        return _dict_to_model(Listing, listing_id, data)

    async def get_all_listings(self) -> List[Listing]:
        records = await self.store.query(self.listings_collection)
        return [_dict_to_model(Listing, record.pop("id"), record) for record in records]

    async def get_listings_for_farmer(self, farmer_id: str) -> List[Listing]:
        records = await self.store.query(self.listings_collection, "farmerId", farmer_id)
        return [_dict_to_model(Listing, record.pop("id"), record) for record in records]

    async def swap_available_quantity(self, listing_id: str, expected: float, new: float) -> bool:
        """Set availableQuantity to new only if it still equals expected"""
        swapped = await self.store.compare_and_update(
            self.listings_collection,
            listing_id,
            expected={"availableQuantity": expected},
            changes={"availableQuantity": new},
        )
        if swapped:
            logger.info(f"Listing {listing_id} availableQuantity {expected} -> {new}")
        return swapped

    # Contracts
    async def create_contract(self, contract: Contract) -> Contract:
        contract.id = await self.store.create(self.contracts_collection, _model_to_dict(contract))
        logger.info(
            f"Created contract {contract.id} on listing {contract.listing_id} "
            f"(farmer {contract.farmer_id}, buyer {contract.buyer_id})"
        )
        return contract

    async def get_contract(self, contract_id: str) -> Optional[Contract]:
        data = await self.store.get(self.contracts_collection, contract_id)
        if data is None:
            return None
        return _dict_to_model(Contract, contract_id, data)

    async def get_contracts_for_farmer(self, farmer_id: str) -> List[Contract]:
        records = await self.store.query(self.contracts_collection, "farmerId", farmer_id)
        return [_dict_to_model(Contract, record.pop("id"), record) for record in records]

    async def get_contracts_for_buyer(self, buyer_id: str) -> List[Contract]:
        records = await self.store.query(self.contracts_collection, "buyerId", buyer_id)
        return [_dict_to_model(Contract, record.pop("id"), record) for record in records]

    async def save_transition(self, contract: Contract, from_status: ContractStatus) -> bool:
        """Persist the contract's new status only if the stored status is still from_status"""
        record = _model_to_dict(contract)
        changes = {"status": record["status"], "updatedAt": record["updatedAt"]}
        saved = await self.store.compare_and_update(
            self.contracts_collection,
            contract.id,
            expected={"status": from_status.value},
            changes=changes,
        )
        if saved:
            logger.info(f"Contract {contract.id} {from_status.value} -> {contract.status.value}")
        return saved
