import logging
from typing import Iterable, Iterator

log = logging.getLogger("serial_bridge.framing")


class LineFramer:
    """Splits a raw byte stream into newline-delimited text lines.

    Input may arrive in chunks of any size. Bytes after the last newline
    are held until the next delimiter arrives; they are never emitted on
    their own. Splitting happens before decoding, so a multi-byte character
    cut across two chunks still decodes correctly.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._encoding = encoding
        self._partial = bytearray()

    def __repr__(self) -> str:
        return f"LineFramer(pending={len(self._partial)}b)"

    @property
    def pending(self) -> bytes:
        """Buffered bytes not yet terminated by a newline"""

        return bytes(self._partial)

    def feed(self, chunk: bytes) -> list[str]:
        """Adds 'chunk' to the buffer and returns every completed line"""

        if b"\n" not in chunk:
            self._partial.extend(chunk)
            return []

        self._partial.extend(chunk)
        *complete, rest = self._partial.split(b"\n")
        self._partial = bytearray(rest)
        return [
            line.rstrip(b"\r").decode(self._encoding, errors="replace")
            for line in complete
        ]

    def reset(self) -> bytes:
        """Drops the unterminated fragment (if any) and returns it"""

        dropped, self._partial = bytes(self._partial), bytearray()
        if dropped:
            log.debug("Discarding %db unterminated fragment", len(dropped))
        return dropped


def frame_lines(
    chunks: Iterable[bytes], encoding: str = "utf-8"
) -> Iterator[str]:
    """Lazily yields lines from an iterable of byte chunks.

    A trailing fragment without a newline is discarded when 'chunks' ends.
    """

    framer = LineFramer(encoding=encoding)
    for chunk in chunks:
        yield from framer.feed(chunk)
    framer.reset()
