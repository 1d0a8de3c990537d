"""
Merge Context and Pipeline State
Data mapping, dot-path resolution, row contexts and the per-merge text cache.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from dataclasses import dataclass, field

from .config import MergeConfig

logger = logging.getLogger(__name__)


class _Unresolved:
    """Sentinel for a path that does not exist in the context"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNRESOLVED"

    def __bool__(self) -> bool:
        return False


UNRESOLVED = _Unresolved()

# Row-scoped variables injected by the repeater engine
ROW_NUM = "ROW_NUM"
ROW_INDEX = "ROW_INDEX"
PARENT_ROW_NUM = "PARENT_ROW_NUM"


def resolve_path(data: Any, path: str) -> Any:
    """
    Walk a dot-separated path through nested mappings and lists.

    Args:
        data: Root mapping
        path: Path such as "Account.Owner.Name" or "Items.0.Price"

    Returns:
        The value found (possibly None), or UNRESOLVED when a step is missing,
        an intermediate value is None, or a value cannot be traversed
    """
    if not path:
        return UNRESOLVED

    current = data
    parts = path.split('.')

    for i, part in enumerate(parts):
        if i > 0 and current is None:
            return UNRESOLVED

        if isinstance(current, Mapping):
            if part not in current:
                return UNRESOLVED
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return UNRESOLVED
            current = current[index]
        else:
            return UNRESOLVED

    return current


def is_missing(value: Any) -> bool:
    """True for UNRESOLVED and for a present None"""
    return value is UNRESOLVED or value is None


@dataclass
class MergeContext:
    """
    Immutable-during-one-pass data a merge evaluates fields and conditions against.

    ``record`` is the record currently in scope: the primary record at the top
    level, the current list element inside a repeater.
    """
    data: Dict[str, Any] = field(default_factory=dict)
    field_types: Dict[str, str] = field(default_factory=dict)
    record: Dict[str, Any] = field(default_factory=dict)
    row_num: Optional[int] = None

    def resolve(self, path: str) -> Any:
        return resolve_path(self.data, path)

    def for_row(self, record: Mapping, index: int) -> "MergeContext":
        """
        Derive the Row Context for one repeater record.

        Args:
            record: Current list element
            index: 0-based position of the record in its list

        Returns:
            New MergeContext = outer data + record fields + positional variables
        """
        record = dict(record) if isinstance(record, Mapping) else {'value': record}
        data = {**self.data, **record}
        data[ROW_NUM] = index + 1
        data[ROW_INDEX] = index
        if self.row_num is not None:
            data[PARENT_ROW_NUM] = self.row_num

        return MergeContext(
            data=data,
            field_types=self.field_types,
            record=record,
            row_num=index + 1,
        )

    def field_type(self, path: str) -> Optional[str]:
        """Implicit format from the path->type table: exact path, then trailing name"""
        if not self.field_types:
            return None
        if path in self.field_types:
            return self.field_types[path]
        tail = path.rsplit('.', 1)[-1]
        return self.field_types.get(tail)


def build_merge_context(record: Optional[Mapping] = None,
                        system_variables: Optional[Mapping] = None,
                        named_sources: Optional[Mapping] = None,
                        field_types: Optional[Mapping] = None,
                        now: Optional[datetime] = None) -> MergeContext:
    """
    Shallow-merge record fields, system variables and named sources.

    Args:
        record: Primary record fields (related records as nested dicts,
            child collections as lists of dicts)
        system_variables: Current user, organization info, etc.
        named_sources: Alias -> list of records attached at the top level
        field_types: Path -> format name used for implicit formatting
        now: Clock override for TODAY / NOW

    Returns:
        MergeContext for one merge operation
    """
    record = dict(record or {})
    now = now or datetime.now()

    data = dict(record)
    data.update({'TODAY': now.date(), 'NOW': now})
    data.update(system_variables or {})

    for alias, records in (named_sources or {}).items():
        if alias in data:
            logger.debug("Named source '%s' shadows a record field", alias)
        data[alias] = records

    return MergeContext(data=data, field_types=dict(field_types or {}), record=record)


@dataclass
class PendingImage:
    """An image marker left for the deferred image pass"""
    node: Any                    # Paragraph holding the marker
    marker: str                  # Full marker text, e.g. {{IMAGE:Logo}}
    field: str                   # Field path inside the marker
    value: Any                   # Value resolved with the context in scope


class TextCache:
    """
    Read cache for node text, keyed by document identity.

    Owned by one merge; the driver clears it at the start and invalidates the
    document after every stage that mutates the tree.
    """

    def __init__(self):
        self._entries: Dict[Any, Dict[int, tuple]] = {}
        self.hits = 0
        self.misses = 0

    def text_of(self, document_key: Any, node: Any) -> str:
        bucket = self._entries.setdefault(document_key, {})
        entry = bucket.get(id(node))
        # Holding the node itself keeps its id from being reused
        if entry is not None and entry[0] is node:
            self.hits += 1
            return entry[1]

        self.misses += 1
        text = node.get_text()
        bucket[id(node)] = (node, text)
        return text

    def invalidate(self, document_key: Any) -> None:
        self._entries.pop(document_key, None)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0


class MergeState:
    """Mutable bookkeeping for one merge: warnings, cache, expanded regions, images"""

    def __init__(self, config: Optional[MergeConfig] = None,
                 cache: Optional[TextCache] = None, document_key: Any = None):
        self.config = config or MergeConfig()
        self.cache = cache or TextCache()
        self.document_key = document_key
        self.warnings: List[str] = []
        self.pending_images: List[PendingImage] = []
        self._expanded: Dict[int, Any] = {}

    def warn(self, message: str) -> None:
        logger.warning(message)
        if message not in self.warnings:
            self.warnings.append(message)

    def mark_expanded(self, node: Any) -> None:
        self._expanded[id(node)] = node

    def is_expanded(self, node: Any) -> bool:
        return self._expanded.get(id(node)) is node

    def text_of(self, node: Any) -> str:
        return self.cache.text_of(self.document_key, node)

    def invalidate(self) -> None:
        self.cache.invalidate(self.document_key)
