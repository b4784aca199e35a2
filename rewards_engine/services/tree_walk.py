# rewards_engine/services/tree_walk.py
"""
Upline/downline walks shared by the services.

Every walk keeps a visited set. Meeting a member twice, or an upline id
with no row behind it, means the stored tree is corrupt and raises
IntegrityViolation.
"""
from typing import Iterator, List, Optional, Set, Tuple
import logging

from models import Member
from models.member import LEGS
from rewards_engine.errors import IntegrityViolation
from rewards_engine.store.tree_store import TreeStore

logger = logging.getLogger(__name__)


def walkUpline(
        store: TreeStore,
        member: Member,
        maxLevels: Optional[int] = None
) -> Iterator[Tuple[int, Member]]:
    """Yield (level, upline member) from the direct sponsor upward."""
    visited = {member.memberID}
    current = member
    level = 1

    while current.uplineID is not None:
        if maxLevels is not None and level > maxLevels:
            return

        if current.uplineID in visited:
            logger.error(
                f"Upline cycle detected at member {current.uplineID} "
                f"while walking from {member.memberID}"
            )
            raise IntegrityViolation(
                f"Upline cycle detected at member {current.uplineID}",
                memberID=member.memberID,
                cycleAt=current.uplineID
            )

        upline = store.getMember(current.uplineID)
        if not upline:
            logger.error(f"Member {current.memberID} references missing upline {current.uplineID}")
            raise IntegrityViolation(
                f"Member {current.memberID} references missing upline {current.uplineID}",
                memberID=current.memberID,
                missingUplineID=current.uplineID
            )

        visited.add(upline.memberID)
        yield level, upline

        current = upline
        level += 1


def uplinePath(store: TreeStore, member: Member) -> List[int]:
    """Member id followed by every ancestor id up to the organization root."""
    return [member.memberID] + [upline.memberID for _, upline in walkUpline(store, member)]


def collectDownlineLevels(
        store: TreeStore,
        rootId: int,
        maxDepth: Optional[int] = None
) -> List[List[Member]]:
    """Breadth-first downline, one list per level (index 0 = level 1)."""
    levels = []
    visited = {rootId}
    frontier = [rootId]
    depth = 1

    while frontier and (maxDepth is None or depth <= maxDepth):
        children = store.getChildrenOf(frontier)
        if not children:
            break

        for child in children:
            if child.memberID in visited:
                logger.error(f"Downline cycle detected under {rootId} at member {child.memberID}")
                raise IntegrityViolation(
                    f"Downline cycle detected at member {child.memberID}",
                    rootID=rootId,
                    cycleAt=child.memberID
                )
            visited.add(child.memberID)

        levels.append(children)
        frontier = [child.memberID for child in children]
        depth += 1

    return levels


def collectDownlineIds(store: TreeStore, rootId: int, maxDepth: Optional[int] = None) -> List[int]:
    return [m.memberID for level in collectDownlineLevels(store, rootId, maxDepth) for m in level]


def walkBinaryAncestors(store: TreeStore, memberId: int) -> Iterator[Member]:
    """Binary parents from the immediate one up to the binary root."""
    visited = {memberId}
    parent = store.getBinaryParent(memberId)

    while parent is not None:
        if parent.memberID in visited:
            raise IntegrityViolation(
                f"Binary tree cycle detected at member {parent.memberID}",
                memberID=memberId,
                cycleAt=parent.memberID
            )
        visited.add(parent.memberID)
        yield parent
        parent = store.getBinaryParent(parent.memberID)


def collectBinarySubtreeIds(store: TreeStore, rootId: int) -> Set[int]:
    """Every member id in the binary subtree rooted at rootId (inclusive)."""
    visited = set()
    frontier = [rootId]

    while frontier:
        for memberId in frontier:
            if memberId in visited:
                raise IntegrityViolation(
                    f"Binary tree cycle detected at member {memberId}",
                    rootID=rootId,
                    cycleAt=memberId
                )
            visited.add(memberId)

        nextFrontier = []
        for node in store.getMembers(frontier):
            for leg in LEGS:
                childId = node.legID(leg)
                if childId is not None:
                    nextFrontier.append(childId)
        frontier = nextFrontier

    return visited


def affectedRoots(store: TreeStore, memberIds) -> Optional[Set[int]]:
    """
    Cache roots whose aggregates may change when these members change:
    the unilevel path and the binary ancestors of each. None means the
    paths could not be resolved and the whole namespace must go.
    """
    roots = set()
    try:
        for memberId in memberIds:
            member = store.getMember(memberId)
            if member is None:
                continue
            roots.update(uplinePath(store, member))
            roots.update(parent.memberID for parent in walkBinaryAncestors(store, memberId))
    except IntegrityViolation:
        return None
    return roots
