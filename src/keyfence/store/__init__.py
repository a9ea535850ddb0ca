"""Store layer for keyfence.

Thin async adapter over Redis:
- Conditional writes (SET NX, SET GET) for lease acquisition
- Optimistic WATCH/MULTI/EXEC transactions for safe release
- Registered Lua scripts and set algebra for the tag index
- Namespaced key schema separating lock, tag and value records
"""

from keyfence.store.keys import StoreKeys
from keyfence.store.redis import (
    RedisStore,
    Transaction,
    close_redis,
    encode_value,
    get_redis,
)

__all__ = [
    "StoreKeys",
    "RedisStore",
    "Transaction",
    "encode_value",
    "get_redis",
    "close_redis",
]
