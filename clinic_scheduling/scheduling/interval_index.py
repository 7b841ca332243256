"""Per-resource index of booked intervals."""

from bisect import bisect_left
from datetime import datetime
from typing import NamedTuple

from clinic_scheduling.schemas.appointments import TimeInterval


def doctor_key(doctor_id: int) -> str:
    """Index and lock key for a doctor."""
    return f"doctor:{doctor_id}"


def room_key(room_id: int) -> str:
    """Index and lock key for a room."""
    return f"room:{room_id}"


class IndexEntry(NamedTuple):
    """One booked interval of a resource."""

    start: datetime
    end: datetime
    appointment_id: int

    @property
    def interval(self) -> TimeInterval:
        """Entry bounds as a TimeInterval."""
        return TimeInterval(start=self.start, end=self.end)


class IntervalIndex:
    """
    Ordered containers of committed, non-cancelled intervals keyed by resource.

    Entries of a key are kept sorted by start, alongside the running maximum
    end of every prefix. A conflict query bisects to the last entry starting
    before the query's end and walks back while that running maximum is still
    after the query's start. When a key's intervals do not overlap each other
    this is O(log n + k) for k conflicts; rows indexed despite overlapping
    (legacy data) only lengthen the walk, they are never skipped.

    The index does no locking. Callers hold the key's lock across a
    conflicts()/insert() pair.
    """

    def __init__(self) -> None:
        """Initialize an empty index."""
        self._entries: dict[str, list[IndexEntry]] = {}
        self._by_appointment: dict[str, dict[int, IndexEntry]] = {}
        self._max_end: dict[str, list[datetime]] = {}

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    def keys(self) -> list[str]:
        """Resource keys with at least one entry."""
        return [key for key, entries in self._entries.items() if entries]

    def conflicts(
        self,
        key: str,
        interval: TimeInterval,
        exclude: int | None = None,
    ) -> list[int]:
        """
        Appointment ids on key whose interval overlaps the given one.

        Args:
            key: Resource key
            interval: Half-open interval to check
            exclude: Appointment id to ignore (its own slot when rescheduling)

        Returns:
            Conflicting appointment ids ordered by start
        """
        entries = self._entries.get(key)
        if not entries:
            return []

        max_end = self._max_end[key]
        found: list[int] = []
        i = bisect_left(entries, interval.end, key=lambda e: e.start) - 1
        while i >= 0 and max_end[i] > interval.start:
            if entries[i].end > interval.start and entries[i].appointment_id != exclude:
                found.append(entries[i].appointment_id)
            i -= 1
        found.reverse()
        return found

    def overlaps(self, key: str, interval: TimeInterval, exclude: int | None = None) -> bool:
        """True iff any committed interval on key shares an instant with interval."""
        return bool(self.conflicts(key, interval, exclude=exclude))

    def insert(self, key: str, appointment_id: int, interval: TimeInterval) -> None:
        """Add an appointment's interval, replacing any previous one for the same id."""
        self.remove(key, appointment_id)
        entry = IndexEntry(interval.start, interval.end, appointment_id)
        entries = self._entries.setdefault(key, [])
        position = bisect_left(entries, entry)
        entries.insert(position, entry)
        self._update_max_end(key, position)
        self._by_appointment.setdefault(key, {})[appointment_id] = entry

    def remove(self, key: str, appointment_id: int) -> bool:
        """
        Drop an appointment's interval from key.

        Returns:
            True if an entry was removed, False if it was not indexed
        """
        entry = self._by_appointment.get(key, {}).pop(appointment_id, None)
        if entry is None:
            return False

        entries = self._entries[key]
        position = bisect_left(entries, entry)
        del entries[position]
        if not entries:
            del self._entries[key]
            del self._by_appointment[key]
            del self._max_end[key]
        else:
            self._update_max_end(key, position)
        return True

    def get(self, key: str, appointment_id: int) -> TimeInterval | None:
        """Indexed interval of an appointment, if any."""
        entry = self._by_appointment.get(key, {}).get(appointment_id)
        return entry.interval if entry else None

    def entries(self, key: str, window: TimeInterval | None = None) -> list[IndexEntry]:
        """Entries of key ordered by start, restricted to those overlapping window."""
        entries = self._entries.get(key, [])
        if window is None:
            return list(entries)
        hi = bisect_left(entries, window.end, key=lambda e: e.start)
        return [e for e in entries[:hi] if e.end > window.start]

    def clear(self) -> None:
        """Drop every entry."""
        self._entries.clear()
        self._by_appointment.clear()
        self._max_end.clear()

    def _update_max_end(self, key: str, position: int) -> None:
        """Recompute running maximum ends from position onward."""
        max_end = self._max_end.setdefault(key, [])
        del max_end[position:]
        running = max_end[-1] if max_end else None
        for entry in self._entries[key][position:]:
            if running is None or entry.end > running:
                running = entry.end
            max_end.append(running)
