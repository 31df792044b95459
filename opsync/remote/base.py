"""Remote operation store interface."""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from opsync.types import Operation, PullBatch, PushAck

DEFAULT_PULL_LIMIT = 1000


@runtime_checkable
class RemoteStore(Protocol):
    """Append-only, deduplicating log of sealed operations.

    Implementations assign each newly accepted operation a ``server_seq``
    strictly greater than every previously assigned one and ignore operations
    whose id they already hold.
    """

    def push(self, ops: List[Operation], client_id: Optional[str] = None) -> PushAck:
        """Append ``ops``, skipping known ids. Acknowledges with the highest sequence held."""
        ...

    def pull(
        self,
        cursor: int,
        exclude_client_id: Optional[str] = None,
        limit: int = DEFAULT_PULL_LIMIT,
    ) -> PullBatch:
        """Operations with ``server_seq > cursor`` in sequence order.

        ``next_cursor`` is the highest sequence the store examined, not only
        the last returned operation. When the tail of the scanned range holds
        nothing but ``exclude_client_id``'s own operations, ``next_cursor``
        moves past them so the caller does not page through its own writes
        again. It never passes an unexamined sequence, and equals ``cursor``
        when nothing lies beyond it.
        """
        ...

    def count_pending(self, cursor: int, exclude_client_id: Optional[str] = None) -> int:
        """How many operations a pull from ``cursor`` would return."""
        ...

    def health(self) -> Dict[str, Any]:
        ...
