import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "commerce")

PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Multi-document transactions need a replica set; disable for standalone servers.
MONGO_TRANSACTIONS = os.getenv("MONGO_TRANSACTIONS", "1") not in ("0", "false", "no")
ENABLE_CHANGE_STREAMS = os.getenv("ENABLE_CHANGE_STREAMS", "0") in ("1", "true", "yes")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
