"""
Structural splitters that locate definition boundaries in source text.

A splitter reports definition units (functions, classes, types) with 1-based
inclusive line spans and their nested definitions. Languages without a
registered splitter use the sliding window in the segmenter.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional, Protocol

from tree_sitter_language_pack import get_parser

from ..models import ChunkKind

# Node types kept as whole units, per tree-sitter grammar.
DEFINITION_TYPES: dict[str, dict[str, ChunkKind]] = {
    "python": {
        "function_definition": ChunkKind.FUNCTION,
        "class_definition": ChunkKind.CLASS,
        "decorated_definition": ChunkKind.FUNCTION,
    },
    "javascript": {
        "function_declaration": ChunkKind.FUNCTION,
        "generator_function_declaration": ChunkKind.FUNCTION,
        "class_declaration": ChunkKind.CLASS,
        "method_definition": ChunkKind.FUNCTION,
        "export_statement": ChunkKind.FUNCTION,
    },
    "typescript": {
        "function_declaration": ChunkKind.FUNCTION,
        "class_declaration": ChunkKind.CLASS,
        "abstract_class_declaration": ChunkKind.CLASS,
        "method_definition": ChunkKind.FUNCTION,
        "interface_declaration": ChunkKind.CLASS,
        "type_alias_declaration": ChunkKind.CLASS,
        "enum_declaration": ChunkKind.CLASS,
        "export_statement": ChunkKind.FUNCTION,
    },
    "go": {
        "function_declaration": ChunkKind.FUNCTION,
        "method_declaration": ChunkKind.FUNCTION,
        "type_declaration": ChunkKind.CLASS,
    },
    "rust": {
        "function_item": ChunkKind.FUNCTION,
        "struct_item": ChunkKind.CLASS,
        "enum_item": ChunkKind.CLASS,
        "impl_item": ChunkKind.CLASS,
        "trait_item": ChunkKind.CLASS,
        "mod_item": ChunkKind.CLASS,
    },
    "java": {
        "method_declaration": ChunkKind.FUNCTION,
        "constructor_declaration": ChunkKind.FUNCTION,
        "class_declaration": ChunkKind.CLASS,
        "interface_declaration": ChunkKind.CLASS,
        "enum_declaration": ChunkKind.CLASS,
    },
    "cpp": {
        "function_definition": ChunkKind.FUNCTION,
        "class_specifier": ChunkKind.CLASS,
        "struct_specifier": ChunkKind.CLASS,
        "namespace_definition": ChunkKind.CLASS,
    },
    "c": {
        "function_definition": ChunkKind.FUNCTION,
        "struct_specifier": ChunkKind.CLASS,
    },
    "php": {
        "function_definition": ChunkKind.FUNCTION,
        "class_declaration": ChunkKind.CLASS,
        "method_declaration": ChunkKind.FUNCTION,
    },
    "ruby": {
        "method": ChunkKind.FUNCTION,
        "singleton_method": ChunkKind.FUNCTION,
        "class": ChunkKind.CLASS,
        "module": ChunkKind.CLASS,
    },
    "csharp": {
        "method_declaration": ChunkKind.FUNCTION,
        "constructor_declaration": ChunkKind.FUNCTION,
        "class_declaration": ChunkKind.CLASS,
        "interface_declaration": ChunkKind.CLASS,
        "struct_declaration": ChunkKind.CLASS,
        "namespace_declaration": ChunkKind.CLASS,
    },
}
DEFINITION_TYPES["tsx"] = DEFINITION_TYPES["typescript"]

# How deep to look below a definition for nested definitions.
MAX_NESTED_DEPTH = 4

# Field names that point from a wrapper node to the wrapped declaration.
_WRAPPED_FIELDS = ("definition", "declaration")


@dataclass
class DefinitionUnit:
    """A definition found by a splitter, with 1-based inclusive lines."""

    start_line: int
    end_line: int
    kind: ChunkKind
    children: list["DefinitionUnit"] = field(default_factory=list)


class StructuralSplitter(Protocol):
    language: str

    def find_definitions(self, text: str) -> list[DefinitionUnit]:
        """Return top-level definitions in source order, without overlapping lines."""
        ...


def _node_lines(node) -> tuple[int, int]:
    start = node.start_point[0] + 1
    end_row, end_col = node.end_point
    # A node ending at column 0 stops at the end of the previous line.
    if end_col == 0 and end_row > node.start_point[0]:
        return start, end_row
    return start, end_row + 1


def _merge_overlapping(units: list[DefinitionUnit]) -> list[DefinitionUnit]:
    """Collapse definitions that share a line so units partition cleanly."""
    merged: list[DefinitionUnit] = []
    for unit in sorted(units, key=lambda u: (u.start_line, u.end_line)):
        if merged and unit.start_line <= merged[-1].end_line:
            prev = merged[-1]
            prev.end_line = max(prev.end_line, unit.end_line)
            prev.children.extend(unit.children)
            prev.children = _merge_overlapping(prev.children)
        else:
            merged.append(unit)
    return merged


class TreeSitterSplitter:
    """Find definitions with a tree-sitter grammar and a node-type table."""

    def __init__(self, language: str, definition_types: dict[str, ChunkKind]):
        self.language = language
        self.definition_types = definition_types
        self._local = threading.local()

    def _get_parser(self):
        # Parsers are not shared between segmentation worker threads.
        parser = getattr(self._local, "parser", None)
        if parser is None:
            parser = get_parser(self.language)
            self._local.parser = parser
        return parser

    def _kind_for(self, node) -> ChunkKind:
        for field_name in _WRAPPED_FIELDS:
            inner = node.child_by_field_name(field_name)
            if inner is not None and inner.type in self.definition_types:
                return self._kind_for(inner)
        return self.definition_types.get(node.type, ChunkKind.FUNCTION)

    def _collect(self, node, depth: int) -> list[DefinitionUnit]:
        units: list[DefinitionUnit] = []
        for child in node.children:
            if child.type in self.definition_types:
                start, end = _node_lines(child)
                nested = []
                if depth < MAX_NESTED_DEPTH:
                    nested = self._collect(child, depth + 1)
                units.append(
                    DefinitionUnit(start, end, self._kind_for(child), nested)
                )
            elif depth > 0 and depth < MAX_NESTED_DEPTH:
                # Class bodies and blocks wrap their members one level down.
                units.extend(self._collect(child, depth + 1))
        return units

    def find_definitions(self, text: str) -> list[DefinitionUnit]:
        tree = self._get_parser().parse(text.encode("utf-8"))
        return _merge_overlapping(self._collect(tree.root_node, 0))


_SPLITTERS: dict[str, StructuralSplitter] = {}


def register_splitter(splitter: StructuralSplitter) -> None:
    _SPLITTERS[splitter.language] = splitter


def get_splitter(language: str) -> Optional[StructuralSplitter]:
    """Return the structural splitter for ``language`` or None."""
    splitter = _SPLITTERS.get(language)
    if splitter is None and language in DEFINITION_TYPES:
        splitter = TreeSitterSplitter(language, DEFINITION_TYPES[language])
        _SPLITTERS[language] = splitter
    return splitter
