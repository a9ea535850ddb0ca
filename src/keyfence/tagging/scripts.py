"""Lua scripts backing the tag index.

The cleanup script reaches keys it only learns at run time (tag sets from
the registry, members from each set), so both scripts target a single
Redis instance rather than a cluster.
"""

from __future__ import annotations

# KEYS[1]    value key
# KEYS[2]    tag registry set
# KEYS[3..n] tag membership sets
# ARGV[1]    serialized value
# ARGV[2]    optional TTL in milliseconds
#
# Returns the number of tags newly associated with the key. SADD reports 0
# for a member that is already present, so re-tagging adds nothing.
ADD_WITH_TAGS = """
local key = KEYS[1]
if ARGV[2] then
    redis.call('SET', key, ARGV[1], 'PX', ARGV[2])
else
    redis.call('SET', key, ARGV[1])
end

local added = 0
for i = 3, #KEYS do
    added = added + redis.call('SADD', KEYS[i], key)
    redis.call('SADD', KEYS[2], KEYS[i])
end
return added
"""

# KEYS[1]    tag registry set
#
# Removes members whose value key no longer exists and forgets tag sets
# that end up empty. Returns the number of members removed.
CLEANUP_TAGS = """
local removed = 0
local tag_sets = redis.call('SMEMBERS', KEYS[1])
for _, tag_set in ipairs(tag_sets) do
    local members = redis.call('SMEMBERS', tag_set)
    for _, member in ipairs(members) do
        if redis.call('EXISTS', member) == 0 then
            removed = removed + redis.call('SREM', tag_set, member)
        end
    end
    if redis.call('SCARD', tag_set) == 0 then
        redis.call('SREM', KEYS[1], tag_set)
    end
end
return removed
"""
