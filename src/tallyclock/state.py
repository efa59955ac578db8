from __future__ import annotations
import typing as tp
from dataclasses import dataclass

from pydispatch import Dispatcher

from tallyclock.common import NUM_LINES, Provenance

@dataclass(frozen=True)
class TallyLine:
    """Value and provenance of a single tally line
    """
    value: bool = False
    """The tally value. Only meaningful if :attr:`provenance` is not
    :attr:`~.common.Provenance.UNSET`
    """

    provenance: Provenance = Provenance.UNSET
    """Which side supplied the value"""

    @property
    def is_set(self) -> bool:
        return self.provenance != Provenance.UNSET

    @property
    def active(self) -> bool:
        """``True`` if the line is set and on-air"""
        return self.is_set and self.value


@dataclass(frozen=True)
class TallySnapshot:
    """Immutable copy of all tally lines at one instant
    """
    lines: tp.Tuple[TallyLine, ...] = tuple(TallyLine() for _ in range(NUM_LINES))

    def __post_init__(self):
        if len(self.lines) != NUM_LINES:
            raise ValueError(f'Snapshot requires {NUM_LINES} lines')

    @property
    def values(self) -> tp.Tuple[bool, ...]:
        """Line values with unset lines reported as ``False``"""
        return tuple(line.active for line in self.lines)

    def to_byte(self) -> int:
        """Encode the line values as a bitmask (bit *n* = line *n*)
        """
        return values_to_byte(self.values)

    @classmethod
    def from_values(cls, values: tp.Sequence[bool], provenance: Provenance) -> 'TallySnapshot':
        return cls(lines=tuple(TallyLine(bool(v), provenance) for v in values))

    @classmethod
    def from_byte(cls, value: int, provenance: Provenance) -> 'TallySnapshot':
        return cls.from_values(byte_to_values(value), provenance)

    def __getitem__(self, line: int) -> TallyLine:
        return self.lines[line]

    def __iter__(self) -> tp.Iterator[TallyLine]:
        yield from self.lines

    def __len__(self):
        return NUM_LINES


def values_to_byte(values: tp.Sequence[bool]) -> int:
    r = 0
    for i, v in enumerate(values):
        if v:
            r |= 1 << i
    return r

def byte_to_values(value: int) -> tp.Tuple[bool, ...]:
    if not 0 <= value <= 0xff:
        raise ValueError(f'Value out of range: {value}')
    return tuple(bool(value & (1 << i)) for i in range(NUM_LINES))


class TallyState(Dispatcher):
    """Authoritative tally state

    Written only by the :class:`~.mediator.TallyMediator`. Readers use
    :meth:`snapshot` which returns an immutable :class:`TallySnapshot`
    without locking.

    :Events:
        .. event:: on_change(state: TallyState, snapshot: TallySnapshot)

            Fired after one or more lines have changed
    """
    _events_ = ['on_change']
    def __init__(self):
        self._lines = [TallyLine() for _ in range(NUM_LINES)]
        self._snapshot = TallySnapshot(lines=tuple(self._lines))

    def snapshot(self) -> TallySnapshot:
        """The current state as an immutable :class:`TallySnapshot`
        """
        return self._snapshot

    def update(self, changes: tp.Iterable[tp.Tuple[int, bool]], provenance: Provenance) -> tp.Set[int]:
        """Apply line values with the given provenance

        Arguments:
            changes: Iterable of ``(line, value)`` tuples
            provenance: The source of the values

        Returns:
            set: The lines whose value or provenance changed
        """
        if provenance == Provenance.UNSET:
            raise ValueError('Cannot set provenance to UNSET')
        changed = set()
        for line, value in changes:
            if not 0 <= line < NUM_LINES:
                raise IndexError(f'Invalid line: {line}')
            new = TallyLine(bool(value), provenance)
            if self._lines[line] == new:
                continue
            self._lines[line] = new
            changed.add(line)
        if len(changed):
            self._snapshot = TallySnapshot(lines=tuple(self._lines))
            self.emit('on_change', self, self._snapshot)
        return changed
