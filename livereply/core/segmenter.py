"""Split growing reply text into message-sized chunks.

Cuts prefer a paragraph break (``newline`` mode) or whitespace, and never go
below a minimum offset for the first chunk, so text already shown in the
current message is not moved into the next one.
"""

from __future__ import annotations

import re

from livereply.core.events import ChunkMode

_PARAGRAPH_RE = re.compile(r"\n[\t ]*\n+")


def pick_break_index(text: str, limit: int, min_index: int, mode: ChunkMode) -> int:
    """Return the cut position (exclusive) for the longest prefix of ``text`` <= ``limit``."""
    bounded_min = min(max(min_index, 0), limit)
    window = text[:limit]

    if mode == ChunkMode.NEWLINE:
        last_break = -1
        for match in _PARAGRAPH_RE.finditer(window):
            if match.end() >= bounded_min:
                last_break = match.end()
        if last_break >= bounded_min:
            return last_break

    for i in range(len(window) - 1, bounded_min - 1, -1):
        if window[i].isspace():
            return i + 1

    return max(bounded_min, min(limit, len(window)))


def normalize_chunks(chunks: list[str], limit: int) -> list[str]:
    """Fold whitespace-only chunks into a neighbour; drop them if neither has room."""
    chunks = list(chunks)
    out: list[str] = []
    for i, chunk in enumerate(chunks):
        if not chunk:
            continue
        if not chunk.strip():
            if out and (limit <= 0 or len(out[-1]) + len(chunk) <= limit):
                out[-1] += chunk
                continue
            nxt = chunks[i + 1] if i + 1 < len(chunks) else ""
            if nxt and (limit <= 0 or len(nxt) + len(chunk) <= limit):
                chunks[i + 1] = chunk + nxt
            continue
        out.append(chunk)
    return out


def split_streaming_text(
    text: str,
    min_first_chunk: int,
    limit: int,
    mode: ChunkMode = ChunkMode.LENGTH,
) -> list[str]:
    if not text:
        return []
    if limit <= 0 or len(text) <= limit:
        return normalize_chunks([text], limit)

    chunks: list[str] = []
    remaining = text
    minimum = min(max(min_first_chunk, 0), limit)
    while len(remaining) > limit:
        idx = pick_break_index(remaining, limit, minimum, mode)
        idx = max(1, min(idx, len(remaining)))
        chunks.append(remaining[:idx])
        remaining = remaining[idx:]
        minimum = 0
    if remaining:
        chunks.append(remaining)
    return normalize_chunks(chunks, limit)


def chunk_text(text: str, limit: int, mode: ChunkMode = ChunkMode.LENGTH) -> list[str]:
    """Chunk a complete (non-streamed) reply."""
    return split_streaming_text(text, 0, limit, mode)
