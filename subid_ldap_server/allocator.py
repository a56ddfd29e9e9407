import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

from uvicorn.config import LOGGING_CONFIG

logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger("uvicorn.error")

MAX_ID = 2**32 - 1


@dataclass
class Slot:
    id: int
    count: int
    owner: str = ""

    @property
    def free(self) -> bool:
        return self.owner == ""


Allocation = Dict[int, Slot]


@dataclass
class ReconcileResult:
    allocation: Allocation
    added: int = 0
    removed: int = 0
    skipped: int = 0
    unassigned: List[str] = field(default_factory=list)

    @property
    def capacity_exhausted(self) -> bool:
        return bool(self.unassigned)


def unique_users(users: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for user in users:
        if user in seen:
            continue
        seen.add(user)
        ordered.append(user)
    return ordered


def slot_ids(start: int, id_range: int) -> range:
    # one id between neighbouring ranges is never handed out
    return range(start, MAX_ID, id_range + 1)


def generate_slots(start: int, id_range: int) -> Allocation:
    """Enumerate every slot between start and MAX_ID, all unowned."""
    ids = slot_ids(start, id_range)
    logger.debug(f"Generate slots start={start} range={id_range} length={len(ids)}")
    return {id: Slot(id=id, count=id_range) for id in ids}


def allocate_new(desired: Sequence[str], start: int, id_range: int) -> ReconcileResult:
    """
    Lay users out back to back from start, ignoring any prior state.

    Used when the target file is not managed yet, so its content is replaced.
    """
    users = unique_users(desired)
    allocation = {
        id: Slot(id=id, count=id_range, owner=user)
        for user, id in zip(users, slot_ids(start, id_range))
    }
    unassigned = users[len(allocation):]
    if unassigned:
        logger.error(f"Insufficient subids available, {len(unassigned)} users unassigned")
    return ReconcileResult(allocation=allocation, added=len(allocation), unassigned=unassigned)


def reconcile(desired: Sequence[str], existing: Allocation, candidate: Allocation) -> ReconcileResult:
    """
    Merge the desired users into the candidate space.

    Existing bindings for desired users keep their slot id. Slots whose owner
    is no longer desired are freed. New users take the free slots in ascending
    id order, in the order they appear in desired. The candidate mapping is
    updated in place and returned as the result allocation.
    """
    users = unique_users(desired)
    wanted = set(users)

    # release: an owner keeps only its lowest slot
    removed = 0
    bound = {}
    released = {}
    for id in sorted(existing):
        slot = existing[id]
        if not slot.free and (slot.owner not in wanted or slot.owner in bound):
            logger.debug(f"Remove {slot.owner} from subid {id}")
            slot = Slot(id=slot.id, count=slot.count)
            removed += 1
        elif not slot.free:
            bound[slot.owner] = id
        released[id] = slot

    # carry forward
    candidate.update(released)

    new_users = [user for user in users if user not in bound]
    free_ids = sorted(id for id, slot in candidate.items() if slot.free)
    logger.debug(f"New users={len(new_users)} unassigned ids={len(free_ids)}")

    for user, id in zip(new_users, free_ids):
        logger.debug(f"Adding user {user} to subid {id}")
        candidate[id] = Slot(id=id, count=candidate[id].count, owner=user)

    added = min(len(new_users), len(free_ids))
    unassigned = new_users[added:]
    for user in unassigned:
        logger.error(f"Insufficient subids available for {user}")

    logger.debug(f"Subids processed added={added} removed={removed}")
    return ReconcileResult(allocation=candidate, added=added, removed=removed, unassigned=unassigned)
