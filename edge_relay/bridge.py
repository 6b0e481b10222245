"""Stream bridge: upstream body -> normalized event stream.

The inference backend streams either an event stream (``data:`` lines in
blank-line-terminated blocks) or a bare sequence of concatenated JSON
objects. The bridge consumes the body chunk by chunk and re-emits each
text delta as one outgoing ``data`` frame, terminated by exactly one
``done`` or ``error`` frame.

``StreamBridge`` is the synchronous state machine; ``relay_frames`` drives
it over an async byte source and owns the source's lifetime.
"""

import codecs
import json
import re
from dataclasses import dataclass
from typing import (
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    List,
    Optional,
    Tuple,
)

from edge_relay.shapes import extract_delta
from edge_relay.telemetry import logger

DATA_MARKER = "data:"
DONE_SENTINEL = "[DONE]"
STREAM_ERROR = "stream_error"
KEEPALIVE_COMMENT = b": ok\n\n"

STREAM_BUFFER_LIMIT = 1_000_000
STREAM_BUFFER_KEEP = 100_000

_DATA_LINE_RE = re.compile(r"(?:^|\n)data:")


@dataclass(frozen=True)
class StreamFrame:
    """One unit of output to the caller: ``data``, ``done`` or ``error``."""

    kind: str
    payload: str = ""

    @classmethod
    def data(cls, payload: str) -> "StreamFrame":
        return cls("data", payload)

    @classmethod
    def done(cls) -> "StreamFrame":
        return cls("done", DONE_SENTINEL)

    @classmethod
    def error(cls) -> "StreamFrame":
        return cls("error", STREAM_ERROR)

    @property
    def terminal(self) -> bool:
        return self.kind != "data"

    def encode(self) -> bytes:
        """Serialize to event-stream wire format.

        Each embedded line of the payload becomes one ``data:`` line (no
        space after the colon); the frame ends with one blank line.
        Terminal frames carry an ``event:`` line naming their kind.
        """
        lines = "".join(
            "{}{}\n".format(DATA_MARKER, line) for line in self.payload.split("\n")
        )
        if self.terminal:
            lines = "event: {}\n{}".format(self.kind, lines)
        return (lines + "\n").encode("utf-8")


def split_json_objects(buffer: str) -> Tuple[List[str], str]:
    """Split out every balanced top-level ``{...}`` object in ``buffer``.

    Braces inside quoted strings (including escaped quotes) are not
    structural. Text between objects is skipped.

    Returns:
        The complete objects in order, and the trailing incomplete object
        (or ``""`` if the buffer ends outside an object).
    """
    objects: List[str] = []
    start = -1
    depth = 0
    in_string = False
    escaped = False

    for i, ch in enumerate(buffer):
        if start == -1:
            if ch == "{":
                start = i
                depth = 1
                in_string = False
                escaped = False
            continue

        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1

        if depth == 0:
            objects.append(buffer[start : i + 1])
            start = -1

    rest = "" if start == -1 else buffer[start:]
    return objects, rest


def split_event_blocks(buffer: str) -> Tuple[List[str], str]:
    """Split complete blank-line-terminated blocks off the front of ``buffer``."""
    blocks: List[str] = []
    while True:
        idx = buffer.find("\n\n")
        if idx == -1:
            return blocks, buffer
        blocks.append(buffer[:idx])
        buffer = buffer[idx + 2 :]


def event_block_data(block: str) -> str:
    """Join a block's ``data:`` line payloads with LF, untrimmed."""
    return "\n".join(
        line[len(DATA_MARKER) :]
        for line in block.split("\n")
        if line.startswith(DATA_MARKER)
    )


class StreamBridge:
    """Incremental transcoder for one upstream body.

    Feed it raw chunks with ``feed`` and call ``finish`` at end of stream.
    Both return the frames that became available. After a terminal frame
    has been produced the bridge ignores further input.
    """

    def __init__(
        self,
        transform: Optional[Callable[[str], str]] = None,
        buffer_limit: int = STREAM_BUFFER_LIMIT,
        buffer_keep: int = STREAM_BUFFER_KEEP,
    ) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._held_cr = False
        self._transform = transform
        self._buffer_limit = buffer_limit
        self._buffer_keep = buffer_keep
        self.terminated = False

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> List[StreamFrame]:
        if self.terminated:
            return []
        self._append(self._decoder.decode(chunk))
        return self._drain()

    def finish(self) -> List[StreamFrame]:
        """Flush decoder state, process what is left, and terminate."""
        if self.terminated:
            return []
        self._append(self._decoder.decode(b"", final=True))
        if self._held_cr:
            self._held_cr = False
            self._buffer += "\n"

        frames = self._drain()
        if not self.terminated and _DATA_LINE_RE.search(self._buffer):
            # An unterminated final event block still counts.
            self._buffer += "\n\n"
            frames.extend(self._drain())

        if not self.terminated:
            frames.append(self._terminate())
        return frames

    def _terminate(self) -> StreamFrame:
        self.terminated = True
        self._buffer = ""
        return StreamFrame.done()

    def _append(self, text: str) -> None:
        # A CR at the very end may be the first half of a CRLF split across reads.
        if self._held_cr:
            text = "\r" + text
            self._held_cr = False
        if text.endswith("\r"):
            text = text[:-1]
            self._held_cr = True
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

    def _drain(self) -> List[StreamFrame]:
        """Decide the framing from the current buffer and consume what is complete.

        A buffer holding a ``data:`` line and a blank line after it is read
        as event blocks; any bare objects ahead of that line are emitted
        first. A ``data:`` line without its blank line waits for more input.
        Anything else is scanned for bare JSON objects.
        """
        frames: List[StreamFrame] = []
        while not self.terminated and self._buffer:
            match = _DATA_LINE_RE.search(self._buffer)
            if match is None:
                frames.extend(self._drain_objects())
                break
            if "\n\n" not in self._buffer[match.start() :]:
                break
            head = self._buffer[: match.start()]
            self._buffer = self._buffer[match.start() :]
            frames.extend(self._emit_objects(split_json_objects(head)[0]))
            frames.extend(self._drain_events())
        return frames

    def _drain_events(self) -> List[StreamFrame]:
        frames: List[StreamFrame] = []
        blocks, self._buffer = split_event_blocks(self._buffer)
        for block in blocks:
            frames.extend(self._handle_block(block))
            if self.terminated:
                break
        return frames

    def _handle_block(self, block: str) -> List[StreamFrame]:
        data = event_block_data(block)
        stripped = data.strip()
        if stripped == DONE_SENTINEL:
            return [self._terminate()]
        if not stripped:
            return []

        text = data
        if stripped[0] in "{[":
            try:
                text = extract_delta(json.loads(stripped)) or ""
            except ValueError:
                text = data
        return self._emit(text)

    def _drain_objects(self) -> List[StreamFrame]:
        if len(self._buffer) > self._buffer_limit and "{" not in self._buffer:
            self._buffer = self._buffer[-self._buffer_keep :]

        objects, rest = split_json_objects(self._buffer)
        if not objects:
            # Nothing complete yet; the text may also be a partial data marker.
            return []
        if not rest:
            last = objects[-1]
            tail = self._buffer[self._buffer.rindex(last) + len(last) :]
            newline = tail.rfind("\n")
            rest = tail[newline:] if newline != -1 else ""
        self._buffer = rest
        return self._emit_objects(objects)

    def _emit_objects(self, objects: List[str]) -> List[StreamFrame]:
        frames: List[StreamFrame] = []
        for raw in objects:
            try:
                obj = json.loads(raw)
            except ValueError:
                continue
            frames.extend(self._emit(extract_delta(obj) or ""))
        return frames

    def _emit(self, text: str) -> List[StreamFrame]:
        if text and self._transform is not None:
            text = self._transform(text)
        if not text:
            return []
        return [StreamFrame.data(text)]


async def relay_frames(
    source: AsyncIterable[bytes],
    *,
    release: Optional[Callable[[], Awaitable[None]]] = None,
    is_cancelled: Optional[Callable[[], Awaitable[bool]]] = None,
    transform: Optional[Callable[[str], str]] = None,
    buffer_limit: int = STREAM_BUFFER_LIMIT,
    buffer_keep: int = STREAM_BUFFER_KEEP,
) -> AsyncIterator[StreamFrame]:
    """Pull chunks from ``source`` and yield frames as soon as they exist.

    Each frame is yielded before the next chunk is requested. The stream
    ends with exactly one ``done`` or ``error`` frame, unless the caller
    goes away (``is_cancelled`` returns True or the generator is closed),
    in which case nothing further is yielded. ``release`` is awaited on
    every exit path.

    Args:
        source: The upstream body as an async byte iterator.
        release: Closes the upstream reader.
        is_cancelled: Polled before each read; True stops the relay.
        transform: Applied to every delta before framing.
        buffer_limit: Size at which a brace-free buffer is cut back.
        buffer_keep: Number of trailing characters kept when cutting back.
    """
    bridge = StreamBridge(transform, buffer_limit, buffer_keep)
    chunks = source.__aiter__()
    try:
        while True:
            if is_cancelled is not None and await is_cancelled():
                logger.info("Caller went away; stopping upstream read")
                return
            try:
                chunk = await chunks.__anext__()
            except StopAsyncIteration:
                break
            for frame in bridge.feed(chunk):
                yield frame
            if bridge.terminated:
                return

        for frame in bridge.finish():
            yield frame
    except Exception as exc:
        logger.warning("Stream bridge failed: %s", type(exc).__name__)
        if not bridge.terminated:
            bridge.terminated = True
            yield StreamFrame.error()
    finally:
        if release is not None:
            try:
                await release()
            except Exception as exc:
                logger.warning("Releasing upstream reader failed: %s", type(exc).__name__)


async def encode_stream(frames: AsyncIterable[StreamFrame]) -> AsyncIterator[bytes]:
    """Render frames to wire bytes, preceded by a keep-alive comment."""
    yield KEEPALIVE_COMMENT
    async for frame in frames:
        yield frame.encode()


async def one_shot_frames(message: str) -> AsyncIterator[StreamFrame]:
    """Frames for a fixed reply: one data frame and ``done``."""
    yield StreamFrame.data(message)
    yield StreamFrame.done()
