from readmind.api.memory import router as memory_router
from readmind.api.documents import router as documents_router
from readmind.api.graph import router as graph_router
from readmind.api.deps import get_owner_id

__all__ = [
    "memory_router",
    "documents_router",
    "graph_router",
    "get_owner_id",
]
