"""Bounded recency set of request ids a poller has already surfaced."""

from collections import OrderedDict
from typing import Iterator


class SeenRequests:
    """Remembers recently surfaced request ids.

    When more than `capacity` ids are held, the set is trimmed down to the
    `retain` most recently added ones.
    """

    def __init__(self, capacity: int = 100, retain: int = 50):
        if retain >= capacity:
            raise ValueError("retain must be less than capacity")
        self.capacity = capacity
        self.retain = retain
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def add(self, request_id: str) -> None:
        if request_id in self._ids:
            self._ids.move_to_end(request_id)
            return
        self._ids[request_id] = None
        if len(self._ids) > self.capacity:
            while len(self._ids) > self.retain:
                self._ids.popitem(last=False)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def clear(self) -> None:
        self._ids.clear()
