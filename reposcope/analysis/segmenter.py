"""
Segment source files into ordered, token-bounded chunks.

Structural path: definitions reported by a ``StructuralSplitter`` become
units; short gaps attach to the following definition and longer ones become
``block`` units. Oversized units are split at nested definitions, then at
blank-line paragraphs, then with the sliding window, and finally a single
over-long line is hard-wrapped into parts.

Fallback path: a sliding window over lines sized by the token budget and
capped by ``max_chunk_lines``, repeating ``overlap_lines`` lines between
neighbours.

Token counts are the sum of per-line estimates, so any span whose summed cost
fits the budget yields a chunk that satisfies ``token_count <= max_chunk_tokens``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import accumulate
from typing import Callable, Optional

from ..config import ChunkingSettings
from ..errors import SegmentationError
from ..models import Chunk, ChunkKind, SnapshotFile
from .chunking import TokenCounter, content_hash, hard_wrap, is_blank, split_lines
from .splitters import DefinitionUnit, StructuralSplitter, get_splitter

logger = logging.getLogger(__name__)


@dataclass
class _Span:
    start: int  # 0-based, inclusive
    end: int  # 0-based, exclusive
    kind: ChunkKind
    prefix: int = 0
    parts: Optional[list[str]] = None


class _FileLayout:
    """Per-file working state: lines, per-line costs and prefix sums."""

    def __init__(self, lines: list[str], counter: TokenCounter, settings: ChunkingSettings):
        self.lines = lines
        self.counter = counter
        self.settings = settings
        self.costs = [counter.count(line) for line in lines]
        self._prefix = [0, *accumulate(self.costs)]

    def cost(self, start: int, end: int) -> int:
        return self._prefix[end] - self._prefix[start]

    def fits(self, start: int, end: int) -> bool:
        return (
            end - start <= self.settings.max_chunk_lines
            and self.cost(start, end) <= self.settings.max_chunk_tokens
        )

    # --- sliding window ---

    def window(self, start: int, end: int, kind: ChunkKind, overlap: bool = True) -> list[_Span]:
        max_tokens = self.settings.max_chunk_tokens
        max_lines = self.settings.max_chunk_lines
        overlap_lines = self.settings.overlap_lines if overlap else 0

        spans: list[_Span] = []
        cursor = start
        prefix = 0
        while cursor < end:
            stop = cursor
            tokens = 0
            while (
                stop < end
                and stop - cursor < max_lines
                and tokens + self.costs[stop] <= max_tokens
            ):
                tokens += self.costs[stop]
                stop += 1

            if stop == cursor:
                # One line alone exceeds the budget.
                pieces = hard_wrap(self.lines[cursor], max_tokens, self.counter)
                spans.append(_Span(cursor, cursor + 1, kind, 0, pieces))
                cursor += 1
                prefix = 0
                continue

            spans.append(_Span(cursor, stop, kind, prefix))
            if stop >= end:
                break

            # Repeat the tail of this window, shrinking it until the next
            # window can still take at least one new line.
            ov = min(overlap_lines, stop - cursor - 1)
            while ov > 0 and (
                ov + 1 > max_lines or self.cost(stop - ov, stop + 1) > max_tokens
            ):
                ov -= 1
            cursor = stop - ov
            prefix = ov
        return spans

    # --- structural splitting ---

    def paragraphs(self, start: int, end: int, kind: ChunkKind) -> list[_Span]:
        """Pack blank-line separated paragraphs; oversized ones use the window."""
        if self.fits(start, end):
            return [_Span(start, end, kind)]

        bounds: list[tuple[int, int]] = []
        para_start = start
        for i in range(start + 1, end):
            if is_blank(self.lines[i - 1]) and not is_blank(self.lines[i]):
                bounds.append((para_start, i))
                para_start = i
        bounds.append((para_start, end))

        spans: list[_Span] = []
        pack_start: Optional[int] = None
        pack_end = start
        for p_start, p_end in bounds:
            if pack_start is not None and self.fits(pack_start, p_end):
                pack_end = p_end
                continue
            if pack_start is not None:
                spans.append(_Span(pack_start, pack_end, kind))
                pack_start = None
            if self.fits(p_start, p_end):
                pack_start, pack_end = p_start, p_end
            else:
                spans.extend(self.window(p_start, p_end, kind, overlap=False))
        if pack_start is not None:
            spans.append(_Span(pack_start, pack_end, kind))
        return spans

    def unit(self, start: int, end: int, definition: DefinitionUnit) -> list[_Span]:
        if self.fits(start, end):
            return [_Span(start, end, definition.kind)]
        children = [
            c for c in definition.children
            if c.start_line - 1 < end and c.end_line > start
        ]
        if children:
            return self.layout(start, end, children, gap_kind=definition.kind)
        return self.paragraphs(start, end, definition.kind)

    def layout(
        self,
        start: int,
        end: int,
        definitions: list[DefinitionUnit],
        gap_kind: ChunkKind = ChunkKind.BLOCK,
    ) -> list[_Span]:
        """Cover ``[start, end)`` with definition units and the gaps between them."""
        attach_gap = self.settings.attach_gap_lines
        spans: list[_Span] = []
        cursor = start
        for definition in definitions:
            def_start = max(definition.start_line - 1, cursor)
            def_end = min(definition.end_line, end)
            if def_start >= def_end:
                continue

            unit_start = def_start
            if def_start > cursor:
                if def_start - cursor <= attach_gap and self.fits(cursor, def_end):
                    unit_start = cursor
                else:
                    spans.extend(self.paragraphs(cursor, def_start, gap_kind))
            spans.extend(self.unit(unit_start, def_end, definition))
            cursor = def_end

        if cursor < end:
            last = spans[-1] if spans else None
            if (
                last is not None
                and last.parts is None
                and last.end == cursor
                and end - cursor <= attach_gap
                and self.fits(last.start, end)
            ):
                last.end = end
            else:
                spans.extend(self.paragraphs(cursor, end, gap_kind))
        return spans


class Segmenter:
    """Turn file text into an ordered chunk sequence that covers every line."""

    def __init__(
        self,
        settings: ChunkingSettings,
        counter: Optional[TokenCounter] = None,
        splitter_lookup: Callable[[str], Optional[StructuralSplitter]] = get_splitter,
    ):
        self.settings = settings
        self.counter = counter or TokenCounter(settings.tokenizer)
        self.splitter_lookup = splitter_lookup

    def segment_file(self, file: SnapshotFile, language: str) -> list[Chunk]:
        """Decode ``file`` as UTF-8 and segment it."""
        try:
            text = file.content.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SegmentationError(file.path, f"not valid UTF-8 ({exc.reason})") from exc
        return self.segment(file.path, text, language)

    def segment(self, file_path: str, text: str, language: str) -> list[Chunk]:
        lines = split_lines(text)
        if not lines:
            return []

        layout = _FileLayout(lines, self.counter, self.settings)
        definitions = self._find_definitions(file_path, text, language)
        if definitions:
            spans = layout.layout(0, len(lines), definitions)
        else:
            spans = layout.window(0, len(lines), ChunkKind.BLOCK)
            if len(spans) == 1 and spans[0].parts is None:
                spans[0].kind = ChunkKind.WHOLE_FILE

        return self._to_chunks(file_path, language, layout, spans)

    def _find_definitions(
        self, file_path: str, text: str, language: str
    ) -> list[DefinitionUnit]:
        splitter = self.splitter_lookup(language)
        if splitter is None:
            return []
        try:
            return splitter.find_definitions(text)
        except Exception as exc:
            logger.warning(
                "Structural split failed for %s (%s), using sliding window: %s",
                file_path,
                language,
                exc,
            )
            return []

    def _to_chunks(
        self,
        file_path: str,
        language: str,
        layout: _FileLayout,
        spans: list[_Span],
    ) -> list[Chunk]:
        chunks: list[Chunk] = []
        for span in spans:
            if span.parts is not None:
                for part, piece in enumerate(span.parts):
                    chunks.append(
                        Chunk(
                            file_path=file_path,
                            start_line=span.start + 1,
                            end_line=span.start + 1,
                            language=language,
                            chunk_kind=span.kind,
                            content_hash=content_hash(piece),
                            token_count=layout.counter.count(piece),
                            text=piece,
                            part=part,
                        )
                    )
                continue

            text = "".join(layout.lines[span.start : span.end])
            chunks.append(
                Chunk(
                    file_path=file_path,
                    start_line=span.start + 1,
                    end_line=span.end,
                    language=language,
                    chunk_kind=span.kind,
                    content_hash=content_hash(text),
                    token_count=layout.cost(span.start, span.end),
                    text=text,
                    overlap_prefix_lines=span.prefix,
                )
            )

        for prev, nxt in zip(chunks, chunks[1:]):
            prev.overlap_suffix_lines = nxt.overlap_prefix_lines
        return chunks
