import asyncio

from app.sync.soft_remove import SoftRemovePolicy


class Board:
    def __init__(self, *ids):
        self.items = {i: {"pending_removal": False} for i in ids}

    def mark_pending_removal(self, item_id):
        if item_id not in self.items:
            return False
        self.items[item_id]["pending_removal"] = True
        return True

    def clear_pending_removal(self, item_id):
        if item_id not in self.items:
            return False
        self.items[item_id]["pending_removal"] = False
        return True

    def remove(self, item_id):
        return self.items.pop(item_id, None) is not None


async def test_item_stays_flagged_then_leaves_after_grace():
    board = Board("a", "b")
    policy = SoftRemovePolicy(grace_ms=20)

    assert policy.soft_remove(board, "a")
    assert board.items["a"]["pending_removal"] is True
    assert policy.is_pending(board, "a")

    await asyncio.sleep(0.05)
    assert "a" not in board.items
    assert "b" in board.items
    assert not policy.is_pending(board, "a")


async def test_correction_inside_grace_keeps_item():
    board = Board("a")
    policy = SoftRemovePolicy(grace_ms=30)
    policy.soft_remove(board, "a")

    assert policy.cancel(board, "a")
    await asyncio.sleep(0.05)

    assert board.items["a"]["pending_removal"] is False
    assert not policy.cancel(board, "a")


async def test_second_schedule_and_unknown_item_are_ignored():
    board = Board("a")
    policy = SoftRemovePolicy(grace_ms=20)

    assert policy.soft_remove(board, "a")
    assert not policy.soft_remove(board, "a")
    assert not policy.soft_remove(board, "missing")


async def test_discard_all_drops_timers_of_one_collection():
    first, second = Board("a"), Board("a")
    policy = SoftRemovePolicy(grace_ms=20)
    policy.soft_remove(first, "a")
    policy.soft_remove(second, "a")

    policy.discard_all(first)
    await asyncio.sleep(0.05)

    assert "a" in first.items
    assert "a" not in second.items
