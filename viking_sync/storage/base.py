"""Storage protocols.

``StoreTransaction`` is the small row-level surface each backend
implements; ``RecordStore`` (records.py) builds every record operation on
top of it, so the SQL and keyed backends behave identically.
"""

from typing import Any, Dict, Iterable, List, Protocol, runtime_checkable


@runtime_checkable
class StoreTransaction(Protocol):
    """Row operations inside one atomic unit of work.

    ``where`` arguments match by equality; a list/tuple/set value matches
    any of its members and ``None`` matches NULL.
    """

    def select(self, table: str, **where: Any) -> List[Dict[str, Any]]:
        """Rows matching ``where`` as plain dicts."""
        ...

    def delete(self, table: str, **where: Any) -> int:
        """Delete matching rows. Returns the number removed."""
        ...

    def upsert(self, table: str, rows: Iterable[Dict[str, Any]]) -> int:
        """Insert rows, replacing any with the same primary key."""
        ...

    def count(self, table: str, **where: Any) -> int:
        ...
