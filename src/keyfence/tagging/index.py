"""Tag index for grouping and bulk-retrieving keys.

Each tag owns a Redis set of the keys written with it. Writes and tag
membership change together in one Lua script; queries are plain set reads,
unions and intersections.

Membership is a best-effort superset: when a tagged key expires its tag
entries stay behind until a cleanup pass prunes them. Instead of a
background scheduler, every write and query runs the cleanup script with a
small probability. Callers that need exact results should check the
returned keys still exist (``get_values`` maps vanished keys to None).

Example:
    index = TagIndex(store)
    await index.set_with_tags("user:7", {"name": "Ada"}, ["team:core", "admins"], ttl=300)
    admins_in_core = await index.get_keys_by_all_tags(["team:core", "admins"])
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from keyfence.config import settings
from keyfence.observability.metrics import record_tag_cleanup
from keyfence.store.keys import StoreKeys
from keyfence.store.redis import encode_value
from keyfence.tagging.scripts import ADD_WITH_TAGS, CLEANUP_TAGS

if TYPE_CHECKING:
    from keyfence.store.redis import RedisStore

logger = logging.getLogger(__name__)


class TagIndex:
    """Reverse index from tags to the keys written with them.

    Args:
        store: Store adapter
        cleanup_probability: Chance in [0, 1] that a call runs a cleanup
            pass first (defaults to ``settings.tag_cleanup_probability``)
        rng: Source of uniform floats in [0, 1), injectable for tests
    """

    def __init__(
        self,
        store: RedisStore,
        cleanup_probability: float | None = None,
        rng: Callable[[], float] = random.random,
    ):
        probability = (
            settings.tag_cleanup_probability if cleanup_probability is None else cleanup_probability
        )
        if not 0.0 <= probability <= 1.0:
            raise ValueError(f"cleanup_probability must be within [0, 1], got {probability}")

        self.store = store
        self.cleanup_probability = probability
        self._rng = rng
        self._add_script = store.register_script(ADD_WITH_TAGS)
        self._cleanup_script = store.register_script(CLEANUP_TAGS)

    async def set_with_tags(
        self,
        key: str,
        value: Any,
        tags: Sequence[str],
        ttl: float | None = None,
    ) -> int:
        """Set a value and mark its key with each of ``tags``.

        With no tags this is a plain (optionally timed) set.

        Returns:
            Number of tags newly associated with the key; tags the key
            already carried count as 0.
        """
        if key is None:
            raise ValueError("key is required")
        if tags is None:
            raise ValueError("tags is required")
        if value is None:
            raise ValueError("value is required; use the store's remove() to delete a key")

        if not tags:
            await self.store.set(key, value, ttl)
            return 0

        args: list[Any] = [encode_value(value)]
        if ttl is not None:
            if ttl <= 0:
                raise ValueError(f"TTL must be positive, got {ttl}")
            args.append(max(1, int(ttl * 1000)))

        await self._cleanup_by_probability()

        keys = [key, StoreKeys.tag_registry(), *(StoreKeys.tag(tag) for tag in tags)]
        added = int(await self.store.exec_script(self._add_script, keys, args))
        logger.debug(f"Tagged '{key}' with {added} new tag(s) of {len(tags)}")
        return added

    async def cleanup_tags(self) -> int:
        """Prune members whose keys no longer exist.

        Returns:
            Number of stale memberships removed
        """
        result = await self.store.exec_script(self._cleanup_script, [StoreKeys.tag_registry()])
        removed = int(result)
        record_tag_cleanup(removed)
        if removed:
            logger.info(f"Tag cleanup removed {removed} stale member(s)")
        return removed

    async def get_keys_by_any_tag(self, tags: Sequence[str]) -> set[str]:
        """Keys carrying at least one of ``tags``.

        Returned keys may already have expired.
        """
        if not tags:
            return set()

        await self._cleanup_by_probability()

        if len(tags) == 1:
            return await self.store.members_of_set(StoreKeys.tag(tags[0]))
        return await self.store.union_of_sets([StoreKeys.tag(tag) for tag in tags])

    async def get_keys_by_all_tags(self, tags: Sequence[str]) -> set[str]:
        """Keys carrying every one of ``tags``.

        Returned keys may already have expired.
        """
        if not tags:
            return set()

        await self._cleanup_by_probability()

        if len(tags) == 1:
            return await self.store.members_of_set(StoreKeys.tag(tags[0]))
        return await self.store.intersection_of_sets([StoreKeys.tag(tag) for tag in tags])

    async def get_values(self, keys: Sequence[str] | set[str]) -> dict[str, bytes | None]:
        """Fetch the values of keys returned by a tag query.

        This is a second round trip, not atomic with the tag query: keys
        that expired in between map to None.
        """
        return await self.store.get_many(sorted(keys))

    async def _cleanup_by_probability(self) -> None:
        if self._rng() >= self.cleanup_probability:
            return
        await self.cleanup_tags()
