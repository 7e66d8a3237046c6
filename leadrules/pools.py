import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Literal, Optional
from pydantic import BaseModel
from .models import Owner, OwnerPool


logger = logging.getLogger(__name__)

CURSOR_ATTEMPTS = 3


class PoolRegistry(ABC):
    """Source of pools and owners for the routing step.

    Implementations own the round-robin cursor. ``compare_and_set_cursor``
    must be atomic: it only writes when the stored cursor still equals
    ``expected``, so two concurrent routings of the same pool cannot both
    claim the same owner.
    """

    @abstractmethod
    def get_pool(self, pool_id: str) -> Optional[OwnerPool]:
        raise NotImplementedError

    @abstractmethod
    def get_owner(self, owner_id: str) -> Optional[Owner]:
        raise NotImplementedError

    @abstractmethod
    def compare_and_set_cursor(self, pool_id: str, expected: int, new: int) -> bool:
        raise NotImplementedError


class InMemoryPoolRegistry(PoolRegistry):
    def __init__(self, pools: Iterable[OwnerPool] = ()) -> None:
        self._lock = threading.Lock()
        self._pools: Dict[str, OwnerPool] = {p.id: p.model_copy(deep=True) for p in pools}

    def pools(self) -> List[OwnerPool]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._pools.values()]

    def get_pool(self, pool_id: str) -> Optional[OwnerPool]:
        with self._lock:
            pool = self._pools.get(pool_id)
            return pool.model_copy(deep=True) if pool is not None else None

    def get_owner(self, owner_id: str) -> Optional[Owner]:
        with self._lock:
            for pool in self._pools.values():
                for owner in pool.owners:
                    if owner.id == owner_id:
                        return owner.model_copy()
        return None

    def compare_and_set_cursor(self, pool_id: str, expected: int, new: int) -> bool:
        with self._lock:
            pool = self._pools.get(pool_id)
            if pool is None or pool.cursor != expected:
                return False
            pool.cursor = new
            return True


class PoolAssignment(BaseModel):
    status: Literal["assigned", "exhausted", "contention", "not_found"]
    owner_id: Optional[str] = None
    strategy: Optional[str] = None


def is_available(owner: Owner) -> bool:
    return owner.is_active and owner.capacity > 0 and owner.current_load < owner.capacity


def pick_round_robin(pool: OwnerPool) -> Optional[int]:
    count = len(pool.owners)
    for step in range(1, count + 1):
        index = (pool.cursor + step) % count
        if is_available(pool.owners[index]):
            return index
    return None


def pick_least_loaded(pool: OwnerPool) -> Optional[int]:
    candidates = [i for i, owner in enumerate(pool.owners) if is_available(owner)]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda i: (pool.owners[i].current_load / pool.owners[i].capacity, pool.owners[i].id),
    )


def assign_from_pool(registry: PoolRegistry, pool_id: str) -> PoolAssignment:
    for _ in range(CURSOR_ATTEMPTS):
        pool = registry.get_pool(pool_id)
        if pool is None:
            return PoolAssignment(status="not_found")
        if pool.strategy == "least_loaded":
            index = pick_least_loaded(pool)
        else:
            index = pick_round_robin(pool)
        if index is None:
            return PoolAssignment(status="exhausted", strategy=pool.strategy)
        owner_id = pool.owners[index].id
        if pool.strategy != "round_robin":
            return PoolAssignment(status="assigned", owner_id=owner_id, strategy=pool.strategy)
        if registry.compare_and_set_cursor(pool_id, pool.cursor, index):
            return PoolAssignment(status="assigned", owner_id=owner_id, strategy=pool.strategy)
        logger.info("round-robin cursor for pool %s moved concurrently, retrying", pool_id)
    return PoolAssignment(status="contention", strategy="round_robin")
