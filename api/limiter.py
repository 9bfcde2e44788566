"""
api/limiter.py -- The one slowapi Limiter shared by every rate-limited route.

Routes decorate themselves with @limiter.limit(...) (login, register, pairing
initiate); api/main.py mounts SlowAPIMiddleware and sets app.state.limiter.
A per-module Limiter would keep its own counters and never trip.

Counters live in RATE_LIMIT_STORAGE_URI. The in-memory default is per process;
deployments running several workers point it at a shared backend
(e.g. "redis://cache:6379/0") so the limit holds across workers.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)
