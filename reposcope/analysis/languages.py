"""Language and file classification helpers."""

from __future__ import annotations

import re
from pathlib import PurePosixPath

BINARY_SNIFF_BYTES = 512

BINARY_EXTS = {
    ".exe", ".dll", ".so", ".dylib", ".bin", ".obj", ".o", ".a", ".lib",
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".ico", ".svg",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv",
    ".zip", ".tar", ".gz", ".rar", ".7z", ".bz2",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
}

EXT_LANGUAGE_MAP = {
    ".py": "python",
    ".pyw": "python",
    ".pyi": "python",
    ".rs": "rust",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".java": "java",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".go": "go",
    ".cs": "csharp",
    ".cpp": "cpp",
    ".cxx": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".m": "objective-c",
    ".mm": "objective-cpp",
    ".swift": "swift",
    ".scala": "scala",
    ".rb": "ruby",
    ".php": "php",
    ".pl": "perl",
    ".pm": "perl",
    ".hs": "haskell",
    ".ml": "ocaml",
    ".mli": "ocaml",
    ".r": "r",
    ".lua": "lua",
    ".ex": "elixir",
    ".exs": "elixir",
    ".dart": "dart",
    ".sh": "shell",
    ".bash": "shell",
    ".zsh": "shell",
    ".fish": "shell",
    ".ps1": "powershell",
    ".sql": "sql",
    ".html": "html",
    ".htm": "html",
    ".css": "css",
    ".scss": "scss",
    ".sass": "sass",
    ".less": "less",
    ".xml": "xml",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".ini": "ini",
    ".md": "markdown",
    ".proto": "protobuf",
    ".graphql": "graphql",
    ".vue": "vue",
    ".svelte": "svelte",
    ".tex": "latex",
    ".cmake": "cmake",
}

FILENAME_LANGUAGE_MAP = {
    "dockerfile": "dockerfile",
    "makefile": "make",
    "cmakelists.txt": "cmake",
}


def detect_language(rel_path: str, sample_text: str | None = None) -> str:
    """Return a lowercase language tag for ``rel_path`` or ``"unknown"``."""
    path = PurePosixPath(rel_path)
    name = path.name.lower()
    if name in FILENAME_LANGUAGE_MAP:
        return FILENAME_LANGUAGE_MAP[name]

    ext = path.suffix.lower()
    language = EXT_LANGUAGE_MAP.get(ext)
    text = (sample_text or "").strip()

    if ext == ".h" and text:
        if re.search(r"@interface|@implementation|@class\b", text):
            return "objective-c"
        if re.search(r"\bnamespace\b|\bstd::|\btemplate\s*<|\bclass\s+\w+\s*[:{]", text):
            return "cpp"

    if not ext and text.startswith("#!"):
        first_line = text.splitlines()[0]
        if "python" in first_line:
            return "python"
        if re.search(r"\b(ba|z|fi)?sh\b", first_line):
            return "shell"
        if "node" in first_line:
            return "javascript"

    return language or "unknown"


def is_binary_content(rel_path: str, head: bytes) -> bool:
    """NUL byte in the first bytes or a known binary extension."""
    if b"\x00" in head[:BINARY_SNIFF_BYTES]:
        return True
    return PurePosixPath(rel_path).suffix.lower() in BINARY_EXTS
