"""Pure analysis helpers for segmentation, token counting, and language classification."""

from .chunking import TokenCounter, content_hash, hard_wrap, reconstruct, split_lines
from .languages import detect_language, is_binary_content
from .segmenter import Segmenter
from .splitters import DefinitionUnit, StructuralSplitter, TreeSitterSplitter, get_splitter

__all__ = [
    "DefinitionUnit",
    "Segmenter",
    "StructuralSplitter",
    "TokenCounter",
    "TreeSitterSplitter",
    "content_hash",
    "detect_language",
    "get_splitter",
    "hard_wrap",
    "is_binary_content",
    "reconstruct",
    "split_lines",
]
