"""Process-local registries shared by the reconciliation loop and deal threads.

Each registry owns its lock and only holds it for the map operation itself,
never across a remote call.
"""
import threading

from enum import Enum
from typing import Dict, Generic, List, Optional, Set, TypeVar

from spade_client.schemas import DealProposal

K = TypeVar("K")
V = TypeVar("V")


class LockedSet(Generic[K]):
    def __init__(self):
        self._items: Set[K] = set()
        self._lock = threading.Lock()

    def add(self, item: K) -> bool:
        with self._lock:
            if item in self._items:
                return False
            self._items.add(item)
            return True

    def discard(self, item: K) -> bool:
        with self._lock:
            if item not in self._items:
                return False
            self._items.remove(item)
            return True

    def __contains__(self, item: K) -> bool:
        with self._lock:
            return item in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def snapshot(self) -> List[K]:
        with self._lock:
            return sorted(self._items)


class LockedMap(Generic[K, V]):
    def __init__(self):
        self._items: Dict[K, V] = {}
        self._lock = threading.Lock()

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            return self._items.get(key)

    def put_if_absent(self, key: K, value: V) -> bool:
        with self._lock:
            if key in self._items:
                return False
            self._items[key] = value
            return True

    def pop(self, key: K) -> Optional[V]:
        with self._lock:
            return self._items.pop(key, None)

    def __contains__(self, key: K) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def snapshot(self) -> Dict[K, V]:
        with self._lock:
            return dict(self._items)


class Admission(str, Enum):
    ADMITTED = "admitted"
    ALREADY_ACTIVE = "already_active"
    ALREADY_IMPORTED = "already_imported"
    OVER_CAPACITY = "over_capacity"


class ActiveDeals:
    """Proposals currently being downloaded or imported, keyed by proposal id.

    The imported set is consulted and updated under this registry's lock so
    a proposal is never in both, and never briefly in neither while it moves
    from active to imported.
    """

    def __init__(self, imported: LockedSet[str]):
        self.imported = imported
        self._deals: Dict[str, DealProposal] = {}
        self._lock = threading.Lock()

    def admit(self, proposal: DealProposal, *, max_active: int) -> Admission:
        with self._lock:
            if proposal.proposal_id in self._deals:
                return Admission.ALREADY_ACTIVE
            if proposal.proposal_id in self.imported:
                return Admission.ALREADY_IMPORTED
            if len(self._deals) > max_active:
                return Admission.OVER_CAPACITY
            self._deals[proposal.proposal_id] = proposal
            return Admission.ADMITTED

    def remove(self, proposal_id: str) -> bool:
        with self._lock:
            return self._deals.pop(proposal_id, None) is not None

    def complete(self, proposal_id: str) -> bool:
        with self._lock:
            if self._deals.pop(proposal_id, None) is None:
                return False
            self.imported.add(proposal_id)
            return True

    def __contains__(self, proposal_id: str) -> bool:
        with self._lock:
            return proposal_id in self._deals

    def __len__(self) -> int:
        with self._lock:
            return len(self._deals)

    def snapshot(self) -> Dict[str, DealProposal]:
        with self._lock:
            return dict(self._deals)


class DealState:
    def __init__(self):
        self.imported: LockedSet[str] = LockedSet()
        self.active = ActiveDeals(self.imported)
        self.waiting: LockedSet[str] = LockedSet()
        self.duplicates: LockedMap[str, str] = LockedMap()
        self.failures: LockedMap[str, str] = LockedMap()

    def inflight(self) -> int:
        return len(self.active) + len(self.waiting)

    def describe(self) -> dict:
        return {
            "active": sorted(self.active.snapshot()),
            "waiting_for_proposal": self.waiting.snapshot(),
            "imported": self.imported.snapshot(),
            "duplicates": self.duplicates.snapshot(),
            "failures": self.failures.snapshot(),
        }
