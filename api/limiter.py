"""
api/limiter.py -- The one slowapi Limiter shared by every router.

api/main.py mounts it as middleware; api/routes/v1/auth.py decorates the
login endpoints with @limiter.limit(). A single instance means a single
counter store -- separate instances per module would each count alone and
never trip.

Limits are per client IP, held in process memory. Behind several service
instances each instance counts on its own.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
