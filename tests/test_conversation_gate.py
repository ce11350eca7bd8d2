import pytest

from companion.domain.concurrency.conversation_gate import ConversationGate, GateStatus


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_second_message_inside_window_is_duplicate() -> None:
    clock = _Clock()
    gate = ConversationGate(duplicate_window_seconds=5, clock=clock)

    first = await gate.try_enter("555")
    clock.now += 1
    second = await gate.try_enter("555")

    assert first.status == GateStatus.ADMITTED
    assert second.status == GateStatus.DUPLICATE
    assert second.handle is None


@pytest.mark.asyncio
async def test_held_gate_after_window_is_busy() -> None:
    clock = _Clock()
    gate = ConversationGate(duplicate_window_seconds=5, clock=clock)

    await gate.try_enter("555")
    clock.now += 30

    assert (await gate.try_enter("555")).status == GateStatus.BUSY


@pytest.mark.asyncio
async def test_release_is_idempotent_and_reopens_the_gate() -> None:
    gate = ConversationGate()
    result = await gate.try_enter("c1")

    assert result.handle.release() is True
    assert result.handle.release() is False
    assert not gate.is_held("c1")

    again = await gate.try_enter("c1")
    assert again.admitted


@pytest.mark.asyncio
async def test_conversations_do_not_block_each_other() -> None:
    gate = ConversationGate()

    a = await gate.try_enter("a")
    b = await gate.try_enter("b")

    assert a.admitted and b.admitted
    assert len(gate) == 2


@pytest.mark.asyncio
async def test_admit_releases_on_exception() -> None:
    gate = ConversationGate()

    with pytest.raises(RuntimeError):
        async with gate.admit("c1") as admission:
            assert admission.admitted
            raise RuntimeError("provider exploded")

    assert not gate.is_held("c1")
    assert (await gate.try_enter("c1")).admitted


@pytest.mark.asyncio
async def test_admit_does_not_release_someone_elses_lock() -> None:
    gate = ConversationGate()
    holder = await gate.try_enter("c1")

    async with gate.admit("c1") as admission:
        assert not admission.admitted

    assert gate.is_held("c1")
    holder.handle.release()


@pytest.mark.asyncio
async def test_sweep_evicts_only_idle_released_entries() -> None:
    clock = _Clock()
    gate = ConversationGate(idle_eviction_seconds=300, clock=clock)

    idle = await gate.try_enter("idle")
    idle.handle.release()
    await gate.try_enter("held")
    recent = await gate.try_enter("recent")

    clock.now += 301
    recent.handle.release()

    assert gate.sweep() == 1
    assert gate.is_held("held")
    assert len(gate) == 2


@pytest.mark.asyncio
async def test_start_and_stop_sweep_task() -> None:
    gate = ConversationGate(sweep_interval_seconds=0.01)
    gate.start()
    await gate.stop()
    assert gate._sweep_task is None
