"""Merge ranked chunks into contiguous per-file blocks."""

from __future__ import annotations

from collections import defaultdict
from typing import Sequence

from .analysis.chunking import split_lines
from .models import RankedChunk, StitchedBlock


class Stitcher:
    """Union overlapping or nearby ranges within each file.

    Two ranges merge when the lines between them number at most ``gap_lines``.
    Blocks are ordered by their best contributing final score, then path and
    start line; no two blocks of one file overlap.
    """

    def __init__(self, gap_lines: int = 3):
        if gap_lines < 0:
            raise ValueError("gap_lines must be non-negative")
        self.gap_lines = gap_lines

    def stitch(self, ranked: Sequence[RankedChunk]) -> list[StitchedBlock]:
        by_file: dict[str, list[RankedChunk]] = defaultdict(list)
        for item in ranked:
            by_file[item.ref.file_path].append(item)

        blocks: list[StitchedBlock] = []
        for file_path, items in by_file.items():
            items.sort(key=lambda r: (r.ref.start_line, r.ref.end_line))
            current: list[RankedChunk] = [items[0]]
            cur_end = items[0].ref.end_line
            for item in items[1:]:
                if item.ref.start_line - cur_end - 1 <= self.gap_lines:
                    current.append(item)
                    cur_end = max(cur_end, item.ref.end_line)
                else:
                    blocks.append(self._make_block(file_path, current, cur_end))
                    current = [item]
                    cur_end = item.ref.end_line
            blocks.append(self._make_block(file_path, current, cur_end))

        blocks.sort(key=lambda b: (-b.score, b.file_path, b.start_line))
        return blocks

    @staticmethod
    def _make_block(file_path: str, members: list[RankedChunk], end_line: int) -> StitchedBlock:
        sources = sorted({(m.ref.start_line, m.ref.end_line) for m in members})
        return StitchedBlock(
            file_path=file_path,
            start_line=members[0].ref.start_line,
            end_line=end_line,
            score=max(m.final_score for m in members),
            language=members[0].ref.language,
            sources=tuple(sources),
        )


def extract_block_text(block: StitchedBlock, file_text: str) -> str:
    """Render the lines of ``block`` from the owning file's text."""
    lines = split_lines(file_text)
    return "".join(lines[block.start_line - 1 : block.end_line])
