"""
Configuration file for the Contract Farming marketplace
"""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Document store backend: "memory" or "firestore"
DOCUMENT_STORE = os.getenv("DOCUMENT_STORE", "memory")

# Firebase credentials (see contract_farming_storage._initialize_firebase)
FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH")
FIREBASE_CREDENTIALS_JSON = os.getenv("FIREBASE_CREDENTIALS_JSON")

# Identity provider: "firebase" (Firebase Auth ID tokens) or "static"
IDENTITY_PROVIDER = os.getenv("IDENTITY_PROVIDER", "static")
# Static provider token table, "token=uid;token=uid"
STATIC_SESSION_TOKENS = dict(
    pair.split("=", 1)
    for pair in os.getenv("STATIC_SESSION_TOKENS", "").split(";")
    if "=" in pair
)

# Collection names
USERS_COLLECTION = "users"
LISTINGS_COLLECTION = "listings"
CONTRACTS_COLLECTION = "contracts"

# Contract policy
DELIVERY_WINDOW_DAYS = int(os.getenv("DELIVERY_WINDOW_DAYS", "30"))

# "reserve": decrement availableQuantity with compare-and-swap at proposal time
# "snapshot": validate against the listing as read, no decrement
ALLOCATION_POLICY = os.getenv("ALLOCATION_POLICY", "reserve")
RESERVATION_MAX_ATTEMPTS = int(os.getenv("RESERVATION_MAX_ATTEMPTS", "5"))

# Who may cancel a non-terminal contract: "either", "farmer" or "buyer"
CANCEL_POLICY = os.getenv("CANCEL_POLICY", "either")

# API
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
