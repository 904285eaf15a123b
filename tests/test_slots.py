import queue

from relayci.slots import SlotFreed, SlotPool


def test_capacity_and_release():
    pool = SlotPool(1)
    slot = pool.try_acquire("a")
    assert slot.holder == "a"
    assert not slot.released
    assert pool.try_acquire("b") is None

    q = queue.Queue()
    pool.subscribe(q)
    slot.release()
    slot.release()
    assert q.get_nowait() == SlotFreed(0)
    assert q.empty()
    assert pool.in_use == 0
    assert pool.try_acquire("b").id == 0


def test_unbounded_pool_grows():
    pool = SlotPool()
    slots = [pool.try_acquire(str(i)) for i in range(5)]
    assert [s.id for s in slots] == [0, 1, 2, 3, 4]
    assert pool.in_use == 5


def test_unsubscribed_queues_are_not_notified():
    pool = SlotPool(2)
    q = queue.Queue()
    pool.subscribe(q)
    pool.unsubscribe(q)
    pool.try_acquire("a").release()
    assert q.empty()
