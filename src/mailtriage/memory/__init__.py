"""Memory rollups and prompt supplement evolution."""

from mailtriage.memory.hierarchy import MemoryHierarchy, nominal_window
from mailtriage.memory.supplements import PromptEvolution

__all__ = ["MemoryHierarchy", "PromptEvolution", "nominal_window"]
