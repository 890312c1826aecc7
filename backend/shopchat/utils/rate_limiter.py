# /shopchat/utils/rate_limiter.py

from slowapi import Limiter
from shopchat.utils.request_utils import get_remote_address
from shopchat.config.settings import settings

# Shared limiter instance; the app and the route modules both import it from here.

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"]
)
