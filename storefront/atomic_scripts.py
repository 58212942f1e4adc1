"""
Lua scripts for atomic Redis operations on JSON documents.
"""
import json
from typing import Any, Dict, List

# Script to merge field updates into a stored JSON document.
# Field names may be dotted paths ("payment.status") into nested objects.
# Results are returned JSON-encoded: Lua tables with string keys do not
# survive the trip back through the Redis protocol.
UPDATE_FIELDS_SCRIPT = """
local collection_key = KEYS[1]
local doc_id = ARGV[1]
local updates = cjson.decode(ARGV[2])

local existing = redis.call('HGET', collection_key, doc_id)
if not existing then
    return cjson.encode({err = 'NOT_FOUND'})
end

local doc = cjson.decode(existing)

for path, value in pairs(updates) do
    local parts = {}
    for part in string.gmatch(path, '[^%.]+') do
        table.insert(parts, part)
    end

    local node = doc
    for i = 1, #parts - 1 do
        if type(node[parts[i]]) ~= 'table' then
            node[parts[i]] = {}
        end
        node = node[parts[i]]
    end
    node[parts[#parts]] = value
end

redis.call('HSET', collection_key, doc_id, cjson.encode(doc))

return cjson.encode({ok = true})
"""

# Script to store a document and add its id to each index set.
# KEYS[1] is the collection hash, KEYS[2..n] the index sets.
INSERT_DOCUMENT_SCRIPT = """
local collection_key = KEYS[1]
local doc_id = ARGV[1]

redis.call('HSET', collection_key, doc_id, ARGV[2])
for i = 2, #KEYS do
    redis.call('SADD', KEYS[i], doc_id)
end

return 1
"""

# Script to delete documents and drop their ids from the given index sets.
# KEYS[1] is the collection hash, KEYS[2..n] the index sets; ARGV holds ids.
DELETE_DOCUMENTS_SCRIPT = """
local collection_key = KEYS[1]

local removed = redis.call('HDEL', collection_key, unpack(ARGV))
for i = 2, #KEYS do
    redis.call('SREM', KEYS[i], unpack(ARGV))
end

return removed
"""


class AtomicScripts:
    """Container for Lua scripts"""

    def __init__(self, redis_wrapper):
        """
        Initialize with RedisClient wrapper (not raw redis.Redis client)
        so script calls go through its retry logic and error handling
        """
        self.redis_wrapper = redis_wrapper

    def update_fields(self, collection_key: str, doc_id: str, fields: Dict[str, Any]) -> Dict:
        """Execute update fields script"""
        raw = self.redis_wrapper.eval(
            UPDATE_FIELDS_SCRIPT,
            1,
            collection_key,
            doc_id,
            json.dumps(fields, default=str)
        )
        return json.loads(raw)

    def insert_document(self, collection_key: str, index_keys: List[str], doc_id: str, payload: str) -> int:
        """Execute insert document script"""
        return self.redis_wrapper.eval(
            INSERT_DOCUMENT_SCRIPT,
            1 + len(index_keys),
            collection_key,
            *index_keys,
            doc_id,
            payload
        )

    def delete_documents(self, collection_key: str, index_keys: List[str], doc_ids: List[str]) -> int:
        """Execute delete documents script"""
        return self.redis_wrapper.eval(
            DELETE_DOCUMENTS_SCRIPT,
            1 + len(index_keys),
            collection_key,
            *index_keys,
            *doc_ids
        )
