"""
Tests for the shared upline/downline walks.
"""

import pytest

from models.member import LEFT
from rewards_engine.errors import IntegrityViolation
from rewards_engine.services.tree_walk import (
    affectedRoots,
    collectBinarySubtreeIds,
    collectDownlineLevels,
    uplinePath,
    walkUpline,
)
from rewards_engine.store.tree_store import TreeStore


def test_upline_levels_and_cap(session, factory):
    root, a, b, c = factory.chain(4)
    store = TreeStore(session)

    assert [(level, m.memberID) for level, m in walkUpline(store, c)] == [
        (1, b.memberID), (2, a.memberID), (3, root.memberID)
    ]
    assert [level for level, _ in walkUpline(store, c, maxLevels=2)] == [1, 2]
    assert uplinePath(store, c) == [c.memberID, b.memberID, a.memberID, root.memberID]


def test_missing_upline_is_an_integrity_violation(session, factory):
    root, child = factory.chain(2)
    root.uplineID = 999
    session.commit()

    with pytest.raises(IntegrityViolation) as excinfo:
        list(walkUpline(TreeStore(session), child))

    assert excinfo.value.details["missingUplineID"] == 999


def test_upline_cycle(session, factory):
    a = factory.member()
    b = factory.member(upline=a)
    a.uplineID = b.memberID
    session.commit()

    with pytest.raises(IntegrityViolation):
        list(walkUpline(TreeStore(session), b))


def test_downline_levels_batched(session, factory):
    root = factory.member()
    children = [factory.member(upline=root) for _ in range(3)]
    grandchild = factory.member(upline=children[1])

    levels = collectDownlineLevels(TreeStore(session, batchSize=2), root.memberID)

    assert [len(level) for level in levels] == [3, 1]
    assert levels[1][0].memberID == grandchild.memberID


def test_affected_roots_include_binary_ancestors(session, factory):
    sponsor, member = factory.chain(2)
    outsider = factory.member()
    outsider.leftLegID = member.memberID
    member.placementPosition = LEFT
    session.commit()
    store = TreeStore(session)

    assert affectedRoots(store, [member.memberID]) == {member.memberID, sponsor.memberID, outsider.memberID}
    assert collectBinarySubtreeIds(store, outsider.memberID) == {outsider.memberID, member.memberID}


def test_affected_roots_on_cycle_means_everything(session, factory):
    a = factory.member()
    b = factory.member(upline=a)
    a.uplineID = b.memberID
    session.commit()

    assert affectedRoots(TreeStore(session), [b.memberID]) is None
