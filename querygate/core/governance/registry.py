import logging
from typing import Dict, List, Optional

from querygate.core.exceptions import SavedQueryNotFoundError
from querygate.core.schemas import (
    SavedQuery,
    SavedQueryCreate,
    SavedQueryFilter,
    SavedQueryUpdate,
    utc_now,
)

logger = logging.getLogger(__name__)


class SavedQueryRegistry:
    """In-memory CRUD store for reusable query templates."""

    def __init__(self):
        self._queries: Dict[str, SavedQuery] = {}

    def __len__(self) -> int:
        return len(self._queries)

    def create(self, data: SavedQueryCreate, owner_id: str) -> SavedQuery:
        saved = SavedQuery(**data.model_dump(), owner_id=owner_id)
        # uuid4 collisions are not expected, but ids must stay unique
        while saved.id in self._queries:
            saved = SavedQuery(**data.model_dump(), owner_id=owner_id)
        self._queries[saved.id] = saved
        logger.info(f"Saved query {saved.id} ({saved.name}) for user {owner_id}")
        return saved

    def get(self, query_id: str) -> SavedQuery:
        try:
            return self._queries[query_id]
        except KeyError:
            raise SavedQueryNotFoundError(query_id)

    def update(self, query_id: str, patch: SavedQueryUpdate) -> SavedQuery:
        current = self.get(query_id)

        # Only merge the fields the caller actually sent
        changes = patch.model_dump(exclude_unset=True)
        changes = {key: value for key, value in changes.items() if value is not None}
        updated = current.model_copy(update={**changes, "updated_at": utc_now()})

        self._queries[query_id] = updated
        return updated

    def delete(self, query_id: str) -> bool:
        """Remove a saved query; deleting an unknown id is a no-op."""
        removed = self._queries.pop(query_id, None)
        if removed is not None:
            logger.info(f"Deleted saved query {query_id}")
        return removed is not None

    def list(self, query_filter: Optional[SavedQueryFilter] = None) -> List[SavedQuery]:
        f = query_filter or SavedQueryFilter()
        search = (f.search or "").strip().lower()

        results = []
        for saved in self._queries.values():
            if f.kind is not None and saved.kind != f.kind:
                continue
            if f.tag is not None and f.tag not in saved.tags:
                continue
            if f.owner_id is not None and saved.owner_id != f.owner_id:
                continue
            if search and not any(
                search in text.lower()
                for text in (saved.name, saved.description, saved.query)
            ):
                continue
            results.append(saved)

        return sorted(results, key=lambda q: q.updated_at, reverse=True)

    def tags(self) -> List[str]:
        return sorted({tag for saved in self._queries.values() for tag in saved.tags})
