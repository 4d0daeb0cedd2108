import pytest

from reposcope.analysis.chunking import TokenCounter, reconstruct, split_lines
from reposcope.analysis.segmenter import Segmenter
from reposcope.analysis.splitters import DefinitionUnit
from reposcope.config import ChunkingSettings
from reposcope.errors import SegmentationError
from reposcope.models import ChunkKind, SnapshotFile


class StaticSplitter:
    language = "fake"

    def __init__(self, units):
        self.units = units

    def find_definitions(self, text):
        return self.units


class BrokenSplitter:
    language = "fake"

    def find_definitions(self, text):
        raise RuntimeError("parser crashed")


def _rebuild(chunks):
    return reconstruct([(c.text, c.overlap_prefix_lines) for c in chunks])


def test_sliding_window_over_flat_file(chunking_settings):
    text = "".join(f"value_{i} = {i}\n" for i in range(500))
    chunks = Segmenter(chunking_settings).segment("data.txt", text, "unknown")

    assert len(chunks) == 11
    assert [c.start_line for c in chunks] == [1 + 45 * k for k in range(11)]
    assert chunks[-1].end_line == 500
    assert all(c.chunk_kind == ChunkKind.BLOCK for c in chunks)
    assert all(c.token_count <= 150 for c in chunks)
    assert chunks[0].overlap_prefix_lines == 0
    assert all(c.overlap_prefix_lines == 5 for c in chunks[1:])
    assert all(c.overlap_suffix_lines == 5 for c in chunks[:-1])
    assert _rebuild(chunks) == text


def test_empty_file_has_no_chunks(chunking_settings):
    assert Segmenter(chunking_settings).segment("empty.py", "", "python") == []


def test_small_file_is_whole_file(chunking_settings):
    text = "alpha beta\ngamma\n"
    chunks = Segmenter(chunking_settings).segment("notes.txt", text, "unknown")
    assert len(chunks) == 1
    chunk = chunks[0]
    assert chunk.chunk_kind == ChunkKind.WHOLE_FILE
    assert (chunk.start_line, chunk.end_line) == (1, 2)
    assert chunk.text == text


def test_missing_trailing_newline_is_preserved(chunking_settings):
    text = "one\ntwo\nthree"
    chunks = Segmenter(chunking_settings).segment("a.txt", text, "unknown")
    assert _rebuild(chunks) == text
    assert chunks[-1].end_line == 3


def test_overlong_line_is_hard_wrapped_into_parts():
    settings = ChunkingSettings(
        max_chunk_tokens=10, overlap_lines=2, max_chunk_lines=50, tokenizer="words"
    )
    long_line = " ".join(f"w{i}" for i in range(35)) + "\n"
    text = "short line\n" + long_line + "tail\n"
    chunks = Segmenter(settings).segment("wide.txt", text, "unknown")

    parts = [c for c in chunks if c.start_line == 2 and c.end_line == 2]
    assert len(parts) >= 4
    assert [c.part for c in parts] == list(range(len(parts)))
    assert "".join(c.text for c in parts) == long_line
    assert all(c.token_count <= 10 for c in chunks)
    assert _rebuild(chunks) == text


def test_structural_units_and_gaps(chunking_settings):
    lines = [f"line {i}\n" for i in range(1, 41)]
    text = "".join(lines)
    units = [
        DefinitionUnit(start_line=3, end_line=10, kind=ChunkKind.FUNCTION),
        DefinitionUnit(start_line=20, end_line=30, kind=ChunkKind.CLASS),
    ]
    segmenter = Segmenter(chunking_settings, splitter_lookup=lambda lang: StaticSplitter(units))
    chunks = segmenter.segment("mod.fake", text, "fake")

    spans = [(c.start_line, c.end_line, c.chunk_kind) for c in chunks]
    # Lines 1-2 attach to the function; 11-19 exceed the attach gap.
    assert spans[0] == (1, 10, ChunkKind.FUNCTION)
    assert spans[1] == (11, 19, ChunkKind.BLOCK)
    assert spans[2] == (20, 30, ChunkKind.CLASS)
    assert spans[-1][1] == 40
    assert _rebuild(chunks) == text
    # Structural chunks never repeat lines.
    assert all(c.overlap_prefix_lines == 0 for c in chunks)


def test_oversized_definition_splits_at_children():
    settings = ChunkingSettings(
        max_chunk_tokens=40, overlap_lines=2, max_chunk_lines=200, tokenizer="words"
    )
    text = "".join(f"tok{i} x y z\n" for i in range(30))
    outer = DefinitionUnit(
        start_line=1,
        end_line=30,
        kind=ChunkKind.CLASS,
        children=[
            DefinitionUnit(start_line=2, end_line=9, kind=ChunkKind.FUNCTION),
            DefinitionUnit(start_line=12, end_line=19, kind=ChunkKind.FUNCTION),
        ],
    )
    segmenter = Segmenter(settings, splitter_lookup=lambda lang: StaticSplitter([outer]))
    chunks = segmenter.segment("big.fake", text, "fake")

    assert len(chunks) > 1
    assert any(c.chunk_kind == ChunkKind.FUNCTION for c in chunks)
    assert all(c.token_count <= 40 for c in chunks)
    assert _rebuild(chunks) == text


def test_python_definitions_are_recognised(chunking_settings):
    text = (
        "import os\n"
        "\n"
        "\n"
        "def load(path):\n"
        "    return open(path).read()\n"
        "\n"
        "\n"
        + "".join(f"# filler comment number {i}\n" for i in range(10))
        + "\n"
        "class Loader:\n"
        "    def run(self):\n"
        "        return load(os.getcwd())\n"
    )
    chunks = Segmenter(chunking_settings).segment("loader.py", text, "python")
    kinds = {c.chunk_kind for c in chunks}
    assert ChunkKind.FUNCTION in kinds
    assert ChunkKind.CLASS in kinds
    assert _rebuild(chunks) == text


def test_splitter_failure_falls_back_to_window(chunking_settings):
    text = "".join(f"row {i}\n" for i in range(10))
    segmenter = Segmenter(chunking_settings, splitter_lookup=lambda lang: BrokenSplitter())
    chunks = segmenter.segment("x.fake", text, "fake")
    assert len(chunks) == 1
    assert chunks[0].chunk_kind == ChunkKind.WHOLE_FILE


def test_invalid_utf8_raises_segmentation_error(chunking_settings):
    bad = SnapshotFile(path="latin.txt", content=b"caf\xe9\n")
    with pytest.raises(SegmentationError) as excinfo:
        Segmenter(chunking_settings).segment_file(bad, "unknown")
    assert excinfo.value.file_path == "latin.txt"


def test_token_counts_use_configured_tokenizer():
    counter = TokenCounter("words")
    assert counter.count("") == 0
    assert counter.count("a b  c\n") == 3
    assert TokenCounter("chars").count("abcdefgh") == 2


def test_split_lines_keeps_endings():
    assert split_lines("a\nb") == ["a\n", "b"]
    assert split_lines("a\n\n") == ["a\n", "\n"]
    assert split_lines("") == []
