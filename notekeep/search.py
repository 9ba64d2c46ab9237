"""
Search Coordinator: runs queries locally, remotely, or both.

Hybrid search queries the active backend first and only reaches for the
remote source when local results are thin. Merged results are re-scored
with the same weighted-term formula the key-value engine uses, so scores
from the two sources are comparable.
"""

import logging
from enum import Enum
from typing import Optional

from .config import DEFAULT_HYBRID_MIN_RESULTS
from .protocol import RemoteSearchSource
from .repository import Repository
from .types import SearchHit, query_terms, rank_hits, weighted_score

logger = logging.getLogger(__name__)


class SearchScope(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    HYBRID = "hybrid"


class SearchCoordinator:
    """
    Args:
        repository: Local records (searches the active backend)
        remote: Optional external search collaborator
        min_results: Hybrid searches with fewer local hits consult the remote
    """

    def __init__(
        self,
        repository: Repository,
        remote: Optional[RemoteSearchSource] = None,
        *,
        min_results: int = DEFAULT_HYBRID_MIN_RESULTS,
    ):
        self._repo = repository
        self._remote = remote
        self._min_results = min_results

    async def search(
        self,
        query: str,
        scope: SearchScope = SearchScope.LOCAL,
        *,
        limit: Optional[int] = None,
    ) -> list[SearchHit]:
        """
        Search records.

        Args:
            query: Whitespace-separated terms
            scope: local, remote, or hybrid
            limit: Maximum hits to return (None for all)

        Returns:
            Hits ordered by score, then most recently updated, then id
        """
        scope = SearchScope(scope)
        if scope == SearchScope.LOCAL:
            hits = await self._local(query)
        elif scope == SearchScope.REMOTE:
            hits = await self._remote_hits(query)
        else:
            hits = await self._hybrid(query)
        ranked = rank_hits(hits)
        return ranked[:limit] if limit is not None else ranked

    async def _local(self, query: str) -> list[SearchHit]:
        results = await self._repo.search(query)
        if results.errors:
            logger.warning("Search skipped %d corrupt record(s)", len(results.errors))
        logger.debug("Local search %r: %d hits (%s)", query, len(results), results.tier.value)
        return results.hits

    async def _remote_hits(self, query: str) -> list[SearchHit]:
        if self._remote is None:
            raise ValueError("No remote search source configured")
        terms = query_terms(query)
        candidates = await self._remote.search(query)
        return [SearchHit(r, float(weighted_score(r, terms))) for r in candidates]

    async def _hybrid(self, query: str) -> list[SearchHit]:
        local_hits = await self._local(query)
        if len(local_hits) >= self._min_results or self._remote is None:
            return local_hits

        try:
            candidates = await self._remote.search(query)
        except Exception as e:
            logger.warning("Remote search failed, returning local results: %s", e)
            return local_hits

        merged = {h.id: h.record for h in local_hits}
        for candidate in candidates:
            if candidate.id in merged:
                continue
            # A record we hold locally is represented by the local copy
            local = await self._repo.get(candidate.id, include_deleted=True)
            if local is not None and local.is_deleted:
                continue
            merged[candidate.id] = local or candidate

        terms = query_terms(query)
        scored = [SearchHit(r, float(weighted_score(r, terms))) for r in merged.values()]
        # A local copy edited since the remote indexed it may no longer match
        return [h for h in scored if h.score > 0]
