"""Store key schema for keyfence.

Key format: {prefix}:{record_type}:{name}

Where:
- prefix: "keyfence" by default (namespace for shared Redis instances)
- record_type: "lock" (lease record), "tag" (tag membership set)
- name: the caller's logical key or tag, unchanged

The tag registry lives at "{prefix}:tags". Value keys and execution
tracker keys are the caller's own keys and carry no prefix.
"""

from __future__ import annotations

from typing import Literal

from keyfence.config import settings

RecordType = Literal["lock", "tag"]


class StoreKeys:
    """Key generator following a consistent naming convention."""

    PREFIX = settings.key_prefix

    @classmethod
    def lock(cls, key: str) -> str:
        """Key for the lease record guarding ``key``."""
        return f"{cls.PREFIX}:lock:{key}"

    @classmethod
    def tag(cls, tag: str) -> str:
        """Key for the membership set of ``tag``."""
        return f"{cls.PREFIX}:tag:{tag}"

    @classmethod
    def tag_registry(cls) -> str:
        """Key for the set of every tag-set key ever written."""
        return f"{cls.PREFIX}:tags"

    @classmethod
    def parse_key(cls, key: str) -> dict[str, str] | None:
        """Parse a namespaced key into its components.

        Returns None if the key doesn't match the expected format.
        """
        parts = key.split(":", 2)
        if len(parts) < 3 or parts[0] != cls.PREFIX or parts[1] not in ("lock", "tag"):
            return None

        return {
            "prefix": parts[0],
            "record_type": parts[1],
            "name": parts[2],
        }
