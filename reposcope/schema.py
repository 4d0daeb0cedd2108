from datetime import datetime
from functools import lru_cache

from lancedb.pydantic import LanceModel, Vector

# Annotations are evaluated eagerly here: Vector(dim) refers to a local name.


@lru_cache(maxsize=None)
def get_code_chunk_model(dim: int) -> type:
    """LanceDB row model for chunk vectors of dimension ``dim``."""

    class CodeChunk(LanceModel):
        id: str
        vector: Vector(dim)
        file_path: str
        start_line: int
        end_line: int
        part: int
        language: str
        chunk_kind: str
        content_hash: str
        content: str
        repo_name: str
        revision: str
        last_updated: datetime

    return CodeChunk
