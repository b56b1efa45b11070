"""
sse_decoder.py — Incremental SSE frame assembler for streamed chat completions

Turns a byte stream of arbitrary chunking (httpx response.iter_bytes() /
aiter_bytes()) into ChatCompletionChunk records, one per `data:` frame.
Handles: frames split or coalesced across chunks, multi-byte UTF-8 split
across chunks, a leading BOM, CRLF normalization, comment and
event/id/retry lines around the data line, OpenAI-style [DONE] terminator.

The assembler is poll-driven: poll_next() reads at most one chunk from its
byte source and never waits for one. Drivers:
  iter_chunks()  — sync generator over an iterable of bytes
  aiter_chunks() — async generator over an async iterable of bytes
"""

import codecs
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import (
    Any,
    AsyncGenerator,
    AsyncIterable,
    Deque,
    Generator,
    Iterable,
    Optional,
)

from chat_types import ChatCompletionChunk
from stream_errors import ChatStreamError, DecodeError, TransportError

logger = logging.getLogger("chatstream.sse_decoder")

SEPARATOR = "\n\n"
DATA_FIELD = "data:"
DONE_SENTINEL = "[DONE]"
OTHER_FIELDS = ("event", "id", "retry")

# Poll states
PRODUCED = "PRODUCED"
PENDING = "PENDING"
DONE = "DONE"
FAILED = "FAILED"


class _Marker:
    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name


# Byte source results other than a chunk of bytes
NOT_READY = _Marker("NOT_READY")
END_OF_STREAM = _Marker("END_OF_STREAM")


@dataclass(frozen=True)
class PollResult:
    """Outcome of a single poll_next() call.

    retry_now: poll again immediately, the next result does not depend on
    new transport data. False on PENDING means wait for the source.
    """

    state: str
    chunk: Optional[ChatCompletionChunk] = None
    error: Optional[ChatStreamError] = None
    retry_now: bool = False


# ── Byte sources ──────────────────────────────────────────────────────


class PushByteSource:
    """Byte source fed by a producer (event loop callback, test, reader task).

    Chunks queued before fail() are still delivered before the error.
    """

    def __init__(self) -> None:
        self._chunks: Deque[bytes] = deque()
        self._closed = False
        self._error: Optional[BaseException] = None

    def push(self, data: bytes) -> None:
        if self._closed:
            raise ValueError("push() on a closed source")
        self._chunks.append(data)

    def close(self) -> None:
        self._closed = True

    def fail(self, error: BaseException) -> None:
        self._error = error
        self._closed = True

    def request_next_chunk(self) -> Any:
        if self._chunks:
            return self._chunks.popleft()
        if self._error is not None:
            raise self._error
        if self._closed:
            return END_OF_STREAM
        return NOT_READY


class IteratorByteSource:
    """Byte source over a sync iterable. Each pull may block in the iterator."""

    def __init__(self, stream: Iterable[bytes]):
        self._iterator = iter(stream)

    def request_next_chunk(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration:
            return END_OF_STREAM

    def close(self) -> None:
        close = getattr(self._iterator, "close", None)
        if close is not None:
            close()


# ── Frame helpers ─────────────────────────────────────────────────────


def _strip_data_field(line: str) -> str:
    value = line[len(DATA_FIELD):]
    if value.startswith(" "):
        value = value[1:]  # Strip single leading space
    return value


def _is_other_field(line: str) -> bool:
    """Comment or non-data field line (`: ping`, `event: message`, `id: 7`)."""
    if line.startswith(":"):
        return True
    name = line.split(":", 1)[0]
    return name in OTHER_FIELDS


def _data_payload(block: str) -> Optional[str]:
    """Return the `data:` payload of a block, None if it has no data field.

    Comment and other field lines are skipped. Multiple data lines are
    joined with newlines.
    """
    lines = block.split("\n")
    for start, line in enumerate(lines):
        if line.startswith(DATA_FIELD):
            break
    else:
        return None

    payload = []
    for line in lines[start:]:
        if line.startswith(DATA_FIELD):
            payload.append(_strip_data_field(line))
        elif not _is_other_field(line):
            payload.append(line)
    return "\n".join(payload)


def _closes_object(payload: str) -> bool:
    """True if payload ends in `}` with every bracket outside strings closed."""
    if not payload.endswith("}"):
        return False

    depth = 0
    in_string = False
    escaped = False
    for ch in payload:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
    return depth == 0 and not in_string


def _payload_complete(payload: str, terminated: bool) -> bool:
    # A separator closes the frame; without one the JSON itself must close.
    return terminated or _closes_object(payload)


# ── Assembler ─────────────────────────────────────────────────────────


class ChunkAssembler:
    """Reassembles `data: <json>` frames from a byte source.

    Owns its text buffer and its source for the lifetime of the stream.
    The buffer only ever holds not-yet-decoded text.
    """

    def __init__(self, source: Any):
        self._source = source
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8-sig")()
        self._eof = False
        self._finished = False

    @property
    def buffered(self) -> str:
        return self._buffer

    @property
    def finished(self) -> bool:
        return self._finished

    def poll_next(self) -> PollResult:
        """Advance the stream by at most one frame and one source read."""
        if self._finished:
            return PollResult(DONE)

        result = self._decode_buffer()
        if result is not None:
            return result
        if self._eof:
            return self._done()

        try:
            data = self._source.request_next_chunk()
        except ChatStreamError as e:
            return self._fail(e)
        except Exception as e:
            return self._fail(TransportError(f"Stream read failed: {e}", retryable=True))

        if data is NOT_READY:
            return PollResult(PENDING)

        if data is END_OF_STREAM:
            failure = self._end_of_input()
            if failure is not None:
                return failure
            return self._decode_buffer() or self._done()

        try:
            text = self._utf8.decode(data)
        except UnicodeDecodeError as e:
            return self._fail(TransportError(f"Invalid UTF-8 in stream: {e}"))
        self._append(text)

        result = self._decode_buffer()
        if result is not None:
            return result
        # New bytes did not finish a frame; the source may already hold more.
        return PollResult(PENDING, retry_now=True)

    def close(self) -> None:
        """Drop the buffer and release the source. Safe to call repeatedly."""
        self._finished = True
        self._buffer = ""
        close = getattr(self._source, "close", None)
        if close is not None:
            close()

    def _append(self, text: str) -> None:
        self._buffer += text
        if "\r" in self._buffer:
            # A lone trailing CR stays until its LF arrives
            self._buffer = self._buffer.replace("\r\n", "\n")

    def _end_of_input(self) -> Optional[PollResult]:
        self._eof = True
        try:
            self._append(self._utf8.decode(b"", final=True))
        except UnicodeDecodeError as e:
            return self._fail(TransportError(f"Stream ended inside a UTF-8 sequence: {e}"))
        if self._buffer.strip():
            # End of stream terminates the last frame
            self._buffer += SEPARATOR
        return None

    def _decode_buffer(self) -> Optional[PollResult]:
        """Slice the first complete frame off the buffer and decode it.

        Returns None when the buffer holds no complete frame.
        """
        while True:
            segments = self._buffer.split(SEPARATOR)
            terminated = len(segments) > 1
            first = segments[0].lstrip()

            payload = _data_payload(first)
            if payload is None:
                if not terminated:
                    return None
                if first:
                    logger.warning("Discarding SSE block without data field: %r", first[:80])
                self._buffer = SEPARATOR.join(segments[1:])
                continue

            if payload.strip() == DONE_SENTINEL:
                if not terminated:
                    return None
                logger.debug("Stream terminator received")
                self._buffer = SEPARATOR.join(segments[1:])
                continue

            if not _payload_complete(payload, terminated):
                return None

            retry_now = False
            if terminated:
                rest = segments[1:]
                second = _data_payload(rest[0].lstrip())
                retry_now = (
                    second is not None
                    and second.strip() != DONE_SENTINEL
                    and _payload_complete(second, len(rest) > 1)
                )

            self._buffer = SEPARATOR.join(segments[1:])
            return self._decode_payload(payload, retry_now)

    def _decode_payload(self, payload: str, retry_now: bool) -> PollResult:
        try:
            raw = json.loads(payload)
        except json.JSONDecodeError as e:
            return self._fail(DecodeError(f"Invalid JSON in SSE frame: {e}"))
        try:
            chunk = ChatCompletionChunk.from_dict(raw)
        except DecodeError as e:
            return self._fail(e)
        return PollResult(PRODUCED, chunk=chunk, retry_now=retry_now)

    def _done(self) -> PollResult:
        self._finished = True
        self._buffer = ""
        return PollResult(DONE)

    def _fail(self, error: ChatStreamError) -> PollResult:
        logger.warning("Stream failed (%s): %s", error.code, error)
        self._finished = True
        self._buffer = ""
        return PollResult(FAILED, error=error)


# ── Drivers ───────────────────────────────────────────────────────────


def iter_chunks(stream: Iterable[bytes]) -> Generator[ChatCompletionChunk, None, None]:
    """Decode chunks from a sync byte stream.

    Raises the stream's TransportError/DecodeError after every chunk decoded
    before it has been yielded.
    """
    assembler = ChunkAssembler(IteratorByteSource(stream))
    try:
        while True:
            result = assembler.poll_next()
            if result.state == PRODUCED:
                yield result.chunk
            elif result.state == FAILED:
                raise result.error
            elif result.state == DONE:
                return
            # PENDING: the iterator blocks for its next chunk on the next poll
    finally:
        assembler.close()


async def aiter_chunks(
    stream: AsyncIterable[bytes],
) -> AsyncGenerator[ChatCompletionChunk, None]:
    """Decode chunks from an async byte stream.

    Awaits the transport only on a PENDING without retry_now.
    """
    source = PushByteSource()
    assembler = ChunkAssembler(source)
    iterator = stream.__aiter__()
    try:
        while True:
            result = assembler.poll_next()
            if result.state == PRODUCED:
                yield result.chunk
            elif result.state == FAILED:
                raise result.error
            elif result.state == DONE:
                return
            elif not result.retry_now:
                try:
                    source.push(await iterator.__anext__())
                except StopAsyncIteration:
                    source.close()
                except Exception as e:
                    source.fail(e)
    finally:
        assembler.close()
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
