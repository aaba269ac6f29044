"""OutputChunkBuffer - Groups raw output units into word-sized chunks.

Engines emit output one small unit at a time (a byte from a C runtime's
stdout, or a token's text). Relaying each unit as its own message is noisy
and renders poorly, so units accumulate until a boundary unit (punctuation
or whitespace) arrives, and the whole buffer goes out as one chunk.

Whatever is left when the job ends is flushed unconditionally; no unit is
ever dropped.
"""

import string
from typing import FrozenSet, Iterable, Iterator, List, Optional, Union

# ASCII punctuation plus ASCII whitespace
DEFAULT_BOUNDARY: FrozenSet[str] = frozenset(string.punctuation + string.whitespace)

Unit = Union[int, str]


class OutputChunkBuffer:
    """
    Per-job accumulator of output units.

    Units are byte values (int, 0-255) or strings; a buffer should hold one
    kind per job. A byte unit is a boundary when its character is in the
    boundary set; a string unit when its last character is.

    Byte buffers decode as UTF-8 with surrogateescape, so
    "".join(chunks).encode("utf-8", "surrogateescape") is exactly the input
    bytes, even if the job ends inside a multi-byte sequence. Boundary
    characters are ASCII, so a flush never splits a valid sequence.
    Such chunks cross the IPC channel through encode_wire_text.
    """

    def __init__(
        self,
        boundary: Iterable[str] = DEFAULT_BOUNDARY,
        encoding: str = "utf-8"
    ):
        self.boundary: FrozenSet[str] = frozenset(boundary)
        self.encoding = encoding
        self._units: List[Unit] = []

    def __len__(self) -> int:
        return len(self._units)

    def is_boundary(self, unit: Unit) -> bool:
        if isinstance(unit, int):
            return chr(unit) in self.boundary
        return bool(unit) and unit[-1] in self.boundary

    def append(self, unit: Unit) -> Optional[str]:
        """
        Add one unit.

        Returns:
            The flushed chunk if unit is a boundary, else None
        """
        if isinstance(unit, int) and not 0 <= unit <= 255:
            raise ValueError(f"Byte unit out of range: {unit}")
        self._units.append(unit)
        if self.is_boundary(unit):
            return self.flush()
        return None

    def flush(self) -> Optional[str]:
        """Empty the buffer into one chunk. Returns None if it was empty."""
        if not self._units:
            return None
        units = self._units
        self._units = []
        if isinstance(units[0], int):
            return bytes(units).decode(self.encoding, errors="surrogateescape")
        return "".join(units)

    def reset(self) -> None:
        """Discard buffered units (start of a new job)."""
        self._units = []


def iter_chunks(
    units: Iterable[Unit],
    boundary: Iterable[str] = DEFAULT_BOUNDARY
) -> Iterator[str]:
    """
    Chunk a whole job's output stream.

    >>> list(iter_chunks(["a", "b", " ", "c", "d"], {" "}))
    ['ab ', 'cd']
    """
    buffer = OutputChunkBuffer(boundary)
    for unit in units:
        chunk = buffer.append(unit)
        if chunk is not None:
            yield chunk
    tail = buffer.flush()
    if tail is not None:
        yield tail
