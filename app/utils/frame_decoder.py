"""
FRAME DECODER
=============

Turns a stream of arbitrarily sized chunks into complete JSON frames, one per
line. Used in three places:

  - OllamaService: model server output (newline-delimited JSON, no prefix).
  - StreamClient: the relay's event stream (`data: <json>` lines, prefix="data:").
  - encode_event(): the relay's side of the same event-stream format.

A frame may be split across any number of chunks, and one chunk may carry many
frames; the decoder keeps the unfinished tail in a buffer until its newline
arrives. Blank lines and comment/keep-alive lines (starting with ":") are
dropped. Lines that are not valid JSON objects are logged and skipped; they
never stop the stream.

Example:
  decoder = FrameDecoder()
  for chunk in response.iter_bytes():
      for frame in decoder.feed(chunk):
          handle(frame)
  for frame in decoder.close():
      handle(frame)
"""

import codecs
import json
import logging
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional, Union


logger = logging.getLogger("chat_relay")

Chunk = Union[str, bytes]


class FrameDecoder:
    """
    Incremental line-delimited JSON decoder.

    Args:
        prefix: If set (e.g. "data:"), only lines starting with it carry frames and
            the prefix is stripped before parsing. Other lines (event:, id:, retry:)
            are ignored.
    """

    def __init__(self, prefix: Optional[str] = None):
        self.prefix = prefix
        self._buffer = ""
        # Bytes are decoded incrementally so a UTF-8 character split across two
        # chunks is joined before it reaches the buffer.
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._closed = False

    def feed(self, chunk: Chunk) -> List[dict]:
        """Add one chunk; return every frame it completed, in order."""
        if self._closed:
            raise RuntimeError("FrameDecoder is closed")
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        if not chunk:
            return []

        self._buffer += chunk
        lines = self._buffer.split("\n")
        # Last element is either "" (chunk ended on a newline) or an unfinished frame.
        self._buffer = lines.pop()

        frames = []
        for line in lines:
            frame = self._parse_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def close(self) -> List[dict]:
        """End of stream: try the leftover buffer once, then discard it."""
        if self._closed:
            return []
        self._closed = True
        residual = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        if not residual.strip():
            return []
        frame = self._parse_line(residual)
        return [frame] if frame is not None else []

    @property
    def pending(self) -> str:
        """Text received but not yet terminated by a newline."""
        return self._buffer

    def _parse_line(self, line: str) -> Optional[dict]:
        line = line.rstrip("\r")
        text = line.strip()
        if not text or text.startswith(":"):
            return None

        if self.prefix:
            if not text.startswith(self.prefix):
                return None
            text = text[len(self.prefix):].strip()
            if not text:
                return None

        try:
            frame = json.loads(text)
        except json.JSONDecodeError as e:
            logger.debug("Skipping malformed frame (%s): %.200s", e, text)
            return None

        if not isinstance(frame, dict):
            logger.debug("Skipping non-object frame: %.200s", text)
            return None
        return frame


def iter_frames(chunks: Iterable[Chunk], prefix: Optional[str] = None) -> Iterator[dict]:
    """Lazily decode a synchronous chunk iterable. Frames are yielded as soon as they complete."""
    decoder = FrameDecoder(prefix=prefix)
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.close()


async def aiter_frames(chunks: AsyncIterable[Chunk], prefix: Optional[str] = None) -> AsyncIterator[dict]:
    """Async version of iter_frames, for httpx's aiter_bytes()."""
    decoder = FrameDecoder(prefix=prefix)
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.close():
        yield frame


def encode_event(payload: dict) -> str:
    """Serialize one event-stream frame: `data: <json>` followed by a blank line."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"
