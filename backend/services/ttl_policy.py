"""How long cached sprint data may be trusted, by sprint state."""

import logging

from services import cache_keys
from services.cache_manager import CacheManager

logger = logging.getLogger(__name__)

ACTIVE = "active"
CLOSED = "closed"
FUTURE = "future"

# Seconds
SPRINT_STATE_TTL = 3600
SPRINT_LIST_TTL = 1800
DEFAULT_TTL = 600

STATE_TTLS = {
    ACTIVE: 300,  # issues move and points change
    CLOSED: 30 * 24 * 3600,  # immutable once closed
    FUTURE: 900,  # may shift during planning
}


def resolve_ttl(state) -> int:
    """Return the TTL in seconds for data derived from a sprint in ``state``."""
    if not isinstance(state, str):
        return DEFAULT_TTL
    return STATE_TTLS.get(state.lower(), DEFAULT_TTL)


class TTLPolicyResolver:
    """Resolves TTLs for sprints whose state the caller does not know.

    The sprint state is fetched upstream once and cached for an hour. If the
    fetch fails the default TTL is returned; resolving a TTL never fails.
    """

    def __init__(self, cache: CacheManager, jira_client):
        self.cache = cache
        self.jira_client = jira_client

    def sprint_state(self, sprint_id):
        key = cache_keys.sprint_state(sprint_id)
        state = self.cache.get(key)
        if state is not None:
            return state

        try:
            state = (self.jira_client.get_sprint(sprint_id) or {}).get("state")
        except Exception as e:
            logger.warning(f"Failed to fetch state for sprint {sprint_id}: {e}")
            return None

        if state:
            self.cache.set(key, state, SPRINT_STATE_TTL)
        return state

    def ttl_for_sprint(self, sprint_id) -> int:
        return resolve_ttl(self.sprint_state(sprint_id))
