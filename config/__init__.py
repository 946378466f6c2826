from .config import (
    EditorConfig,
    GridConfig,
    FootprintConfig,
    SelectionConfig,
    EditLogConfig,
    GRID_ALGORITHMS,
)

__all__ = [
    "EditorConfig",
    "GridConfig",
    "FootprintConfig",
    "SelectionConfig",
    "EditLogConfig",
    "GRID_ALGORITHMS",
]
