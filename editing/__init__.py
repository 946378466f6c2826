from .selection import RectRegion, NavSelection, SelectionBuffer, SoundingSelector
from .bias import BiasMode, BiasOptimizer, binned_variance
from .session import EditorSession, EditorListener, FlushPolicy

__all__ = [
    # Selection
    "RectRegion",
    "NavSelection",
    "SelectionBuffer",
    "SoundingSelector",
    # Bias
    "BiasMode",
    "BiasOptimizer",
    "binned_variance",
    # Session
    "EditorSession",
    "EditorListener",
    "FlushPolicy",
]
