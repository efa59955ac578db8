import pytest

from tallyclock.common import Provenance
from tallyclock.state import TallyState, TallySnapshot, TallyLine, byte_to_values, values_to_byte

def test_initial_state():
    state = TallyState()
    snapshot = state.snapshot()
    assert len(snapshot) == 8
    for line in snapshot:
        assert line.provenance == Provenance.UNSET
        assert not line.is_set
        assert not line.active
    assert snapshot.to_byte() == 0

def test_update():
    state = TallyState()
    events = []

    def on_change(instance, snapshot, **kwargs):
        events.append(snapshot)

    state.bind(on_change=on_change)

    first = state.snapshot()
    changed = state.update({(3, True), (4, False)}, Provenance.LOCAL)
    assert changed == {3, 4}
    snapshot = state.snapshot()
    assert snapshot is not first
    assert snapshot[3] == TallyLine(True, Provenance.LOCAL)
    assert snapshot[4] == TallyLine(False, Provenance.LOCAL)
    assert snapshot[4].is_set and not snapshot[4].active
    assert snapshot.to_byte() == 0b1000
    assert events == [snapshot]

    # snapshots are not affected by later writes
    assert first[3] == TallyLine()

    # no change, no event
    assert state.update({(3, True)}, Provenance.LOCAL) == set()
    assert state.snapshot() is snapshot
    assert len(events) == 1

    # same value from the other side changes provenance
    assert state.update({(3, True)}, Provenance.REMOTE) == {3}
    assert state.snapshot()[3].provenance == Provenance.REMOTE
    assert len(events) == 2

    with pytest.raises(ValueError):
        state.update({(0, True)}, Provenance.UNSET)
    with pytest.raises(IndexError):
        state.update({(8, True)}, Provenance.LOCAL)

def test_byte_conversion():
    for value in range(256):
        values = byte_to_values(value)
        assert len(values) == 8
        assert values_to_byte(values) == value
        snapshot = TallySnapshot.from_byte(value, Provenance.REMOTE)
        assert snapshot.values == values
    assert byte_to_values(0b101) == (True, False, True, False, False, False, False, False)
    with pytest.raises(ValueError):
        byte_to_values(256)
    with pytest.raises(ValueError):
        TallySnapshot(lines=(TallyLine(),))
