# order_cache.py
import logging
from typing import Callable, Iterable, List, Optional

from delivery_sync.schemas import Order

logger = logging.getLogger("delivery-sync.cache")

CacheListener = Callable[[str, List[Order]], None]


class OrderCache:
    """
    Ordered in-memory collection of orders, newest first.

    Owned by exactly one dashboard. Listeners are told about every change as
    ("upsert", [order]) or ("replace", orders).
    """

    def __init__(self):
        self._orders: List[Order] = []
        self._listeners: List[CacheListener] = []

    def __len__(self):
        return len(self._orders)

    def __iter__(self):
        return iter(list(self._orders))

    def snapshot(self) -> List[Order]:
        return list(self._orders)

    def get(self, order_id) -> Optional[Order]:
        index = self._index_of(order_id)
        return self._orders[index] if index is not None else None

    def filter(self, predicate: Callable[[Order], bool]) -> List[Order]:
        return [o for o in self._orders if predicate(o)]

    def upsert(self, order: Order) -> bool:
        """
        Replace the order with the same id in place, or prepend it.

        Returns False when the cache already held an identical record.
        """
        index = self._index_of(order.id)
        if index is None:
            self._orders.insert(0, order)
        elif self._orders[index] == order:
            return False
        else:
            self._orders[index] = order
        self._notify("upsert", [order])
        return True

    def replace_all(self, orders: Iterable[Order]):
        deduped: List[Order] = []
        seen = set()
        for order in orders:
            key = str(order.id)
            if key in seen:
                continue
            seen.add(key)
            deduped.append(order)
        self._orders = deduped
        self._notify("replace", list(deduped))

    def clear(self):
        self._orders = []
        self._listeners = []

    def add_listener(self, listener: CacheListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: CacheListener):
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _index_of(self, order_id) -> Optional[int]:
        key = str(order_id)
        for i, order in enumerate(self._orders):
            if str(order.id) == key:
                return i
        return None

    def _notify(self, kind: str, orders: List[Order]):
        for listener in list(self._listeners):
            try:
                listener(kind, orders)
            except Exception:
                logger.exception("[CACHE] Listener failed")
