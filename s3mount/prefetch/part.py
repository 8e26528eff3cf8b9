"""Self-identifying pieces of an object's body."""

from __future__ import annotations


def _quoted(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class PartMismatchError(Exception):
    """A part was claimed with the wrong key or offset."""


class KeyMismatchError(PartMismatchError):
    """The part belongs to a different object key."""

    def __init__(self, actual: str, requested: str) -> None:
        super().__init__(
            f"wrong part key: actual={_quoted(actual)}, requested={_quoted(requested)}"
        )
        self.actual = actual
        self.requested = requested


class OffsetMismatchError(PartMismatchError):
    """The part starts at a different offset than the one requested."""

    def __init__(self, actual: int, requested: int) -> None:
        super().__init__(f"wrong part offset: actual={actual}, requested={requested}")
        self.actual = actual
        self.requested = requested


class Part:
    """A contiguous slice of an object, tagged with its key and starting offset.

    The bytes can only be taken out by a caller that names the right key and offset.
    """

    __slots__ = ("key", "offset", "_data")

    def __init__(self, key: str, offset: int, data: bytes) -> None:
        self.key = key
        self.offset = offset
        self._data = bytes(data)

    def into_bytes(self, key: str, offset: int) -> bytes:
        """Return the part's bytes if ``key`` and ``offset`` match it."""
        if self.key != key:
            raise KeyMismatchError(self.key, key)
        if self.offset != offset:
            raise OffsetMismatchError(self.offset, offset)
        return self._data

    def split_off(self, at: int) -> Part:
        """Split at ``at``: return the tail ``[at, len)`` and keep ``[0, at)`` here."""
        if not 0 <= at <= len(self._data):
            raise ValueError(f"split index {at} out of range for part of length {len(self._data)}")
        tail = Part(self.key, self.offset + at, self._data[at:])
        self._data = self._data[:at]
        return tail

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Part(key={self.key!r}, offset={self.offset}, len={len(self._data)})"