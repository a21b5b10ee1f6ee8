from .affinity_router import AffinityRouter as AffinityRouter
from .consistent_hash import ConsistentHashRing as ConsistentHashRing
from .session_key import (
    SessionKeyExtractor as SessionKeyExtractor,
    SessionKeyStrategy as SessionKeyStrategy,
    find_cookie as find_cookie,
    ip_hash_key as ip_hash_key,
)
