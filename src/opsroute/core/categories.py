"""Category Registry: the canonical list of issue categories."""

from __future__ import annotations

import logging
import threading
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from opsroute.core.errors import ConfigInvalid
from opsroute.core.keywords import group_by_language, match_keywords, normalize_text
from opsroute.core.models import KEYWORD_LANGUAGES, Category

LOGGER = logging.getLogger(__name__)


class CategorySnapshot:
    """Immutable, versioned view of the registry."""

    def __init__(self, version: int, categories: Sequence[Category]) -> None:
        self.version = version
        self.categories: Tuple[Category, ...] = tuple(sorted(categories, key=lambda c: c.id))
        self._by_id: Dict[int, Category] = {c.id: c for c in self.categories}
        self._by_name: Dict[str, Category] = {normalize_text(c.name): c for c in self.categories}
        self._keywords: Dict[int, Dict[str, List[str]]] = {
            c.id: group_by_language(c.keywords) for c in self.categories
        }

    @property
    def ids(self) -> FrozenSet[int]:
        return frozenset(self._by_id)

    def get(self, category_id: int) -> Optional[Category]:
        return self._by_id.get(category_id)

    def find_by_name(self, name: Optional[str]) -> Optional[Category]:
        if not name:
            return None
        return self._by_name.get(normalize_text(name))

    def keyword_hits(self, category_id: int, text: str) -> Dict[str, List[str]]:
        return match_keywords(text, self._keywords.get(category_id, {}))

    def detect(self, text: str) -> Optional[Tuple[Category, List[str]]]:
        """Pick the active category with the most keyword hits.

        Ties prefer the more urgent ``priority_weight``, then the lower id.
        """

        best: Optional[Tuple[Tuple[int, int, int], Category, List[str]]] = None
        for category in self.categories:
            if not category.is_active:
                continue
            hits = self.keyword_hits(category.id, text)
            flat = [keyword for entries in hits.values() for keyword in entries]
            if not flat:
                continue
            rank = (-len(flat), category.priority_weight, category.id)
            if best is None or rank < best[0]:
                best = (rank, category, flat)
        if best is None:
            return None
        return best[1], best[2]


def _not_int(value: object) -> bool:
    return isinstance(value, bool) or not isinstance(value, int)


def validate_categories(batch: Sequence[Category]) -> List[str]:
    """Return every problem found in a category batch (empty when valid)."""

    problems: List[str] = []
    seen_ids: set[int] = set()
    seen_names: set[str] = set()
    for category in batch:
        label = f"category {category.id} ({category.name!r})"
        if _not_int(category.id) or category.id <= 0:
            problems.append(f"{label}: id must be a positive integer")
        elif category.id in seen_ids:
            problems.append(f"{label}: duplicate id")
        seen_ids.add(category.id)

        name_key = normalize_text(category.name or "")
        if not name_key:
            problems.append(f"{label}: name is required")
        elif name_key in seen_names:
            problems.append(f"{label}: duplicate name")
        seen_names.add(name_key)

        if not (category.department or "").strip():
            problems.append(f"{label}: department is required")
        if _not_int(category.priority_weight) or not 1 <= category.priority_weight <= 5:
            problems.append(f"{label}: priority_weight must be between 1 and 5")
        if _not_int(category.escalation_threshold) or category.escalation_threshold < 1:
            problems.append(f"{label}: escalation_threshold must be at least 1")
        for keyword in category.keywords:
            if not normalize_text(keyword.text):
                problems.append(f"{label}: empty keyword")
            if keyword.language not in KEYWORD_LANGUAGES:
                problems.append(f"{label}: unsupported keyword language {keyword.language!r}")
    return problems


class CategoryRegistry:
    """Holds the published category snapshot.

    Writers validate a whole batch before publishing, so readers only ever
    see a complete, valid set.
    """

    def __init__(self, categories: Iterable[Category] = ()) -> None:
        self._lock = threading.RLock()
        self._snapshot = CategorySnapshot(0, ())
        batch = list(categories)
        if batch:
            self.replace_all(batch)

    def snapshot(self) -> CategorySnapshot:
        return self._snapshot

    def load_all(self) -> List[Category]:
        return list(self._snapshot.categories)

    def get(self, category_id: int) -> Optional[Category]:
        return self._snapshot.get(category_id)

    def find_by_name(self, name: Optional[str]) -> Optional[Category]:
        return self._snapshot.find_by_name(name)

    def prepare(self, batch: Sequence[Category]) -> CategorySnapshot:
        """Validate a batch and build the snapshot that would replace the current one."""

        problems = validate_categories(batch)
        if problems:
            raise ConfigInvalid(problems)
        return CategorySnapshot(self._snapshot.version + 1, batch)

    def publish(self, snapshot: CategorySnapshot) -> FrozenSet[int]:
        """Swap in a prepared snapshot and return the category ids it dropped."""

        with self._lock:
            removed = self._snapshot.ids - snapshot.ids
            self._snapshot = snapshot
        return removed

    def replace_all(self, batch: Sequence[Category]) -> FrozenSet[int]:
        """Atomically replace every category.

        Returns the ids of prior categories that are no longer present so
        dependent rules can be cascaded by the caller.
        """

        with self._lock:
            removed = self.publish(self.prepare(batch))
        if removed:
            LOGGER.warning("Category replacement removed ids %s", sorted(removed))
        LOGGER.info("Loaded %s categories", len(batch))
        return removed

    def detect(self, text: str) -> Optional[Tuple[Category, List[str]]]:
        return self._snapshot.detect(text)
