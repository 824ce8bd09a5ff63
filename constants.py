import os
from datetime import timedelta

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# Messages live exactly 48 hours, this is not configurable.
MESSAGE_TTL = timedelta(hours=48)
REPLY_PREVIEW_LENGTH = 50

GUEST_MESSAGE_LIMIT = int(os.getenv("GUEST_MESSAGE_LIMIT", 5))
# 0 keeps the guest counter for as long as Redis keeps the key
GUEST_QUOTA_TTL_SECONDS = int(os.getenv("GUEST_QUOTA_TTL_SECONDS", 0))

PRESENCE_LEASE_SECONDS = int(os.getenv("PRESENCE_LEASE_SECONDS", 30))
PRESENCE_HEARTBEAT_SECONDS = float(os.getenv("PRESENCE_HEARTBEAT_SECONDS", 10))

BROKER_POLL_TIMEOUT = float(os.getenv("BROKER_POLL_TIMEOUT", 1.0))
BROKER_LISTENER_THREADS = int(os.getenv("BROKER_LISTENER_THREADS", 32))
SUBSCRIPTION_QUEUE_SIZE = int(os.getenv("SUBSCRIPTION_QUEUE_SIZE", 256))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
RELOAD = os.getenv("RELOAD", "false").lower() == "true"
