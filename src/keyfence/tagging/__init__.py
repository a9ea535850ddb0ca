"""Tag index for keyfence.

Groups keys under tags for bulk retrieval:
- Atomic write-and-tag via a registered Lua script
- Union (any tag) and intersection (all tags) queries
- Probabilistic pruning of memberships whose keys have expired
"""

from keyfence.tagging.index import TagIndex

__all__ = ["TagIndex"]
