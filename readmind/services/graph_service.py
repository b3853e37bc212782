"""
Unified graph service - read-side views across documents, notes and memories.

Every operation is read-only and scoped to one owner. Asking for a document,
note or memory that does not exist for the owner raises
``AuthorizationError``; whether it exists for someone else is not revealed.

Node ids are namespaced by kind (``doc:``, ``note:``, ``mem:``) so the three
id spaces can share one graph.
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from readmind.config import settings
from readmind.db.models import (
    Document, DocumentEmbedding, DocumentRelationship,
    MemoryEntity, MemoryRelationship, Note,
)
from readmind.errors import AuthorizationError
from readmind.services.embedding_service import EmbeddingService, get_embedding_service
from readmind.services.memory_search import MemorySearchService
from readmind.services.vector_store import VectorStore, admits

logger = logging.getLogger(__name__)

ANNOTATION_LIMIT = 20


def doc_key(document_id: str) -> str:
    return f"doc:{document_id}"


def note_key(note_id: str) -> str:
    return f"note:{note_id}"


def mem_key(memory_id: str) -> str:
    return f"mem:{memory_id}"


def note_relationship_label(score: float) -> str:
    if score >= 0.90:
        return "references"
    if score >= 0.85:
        return "illustrates"
    return "complements"


def clamp_depth(depth: int) -> int:
    return max(1, min(int(depth), settings.graph_max_depth))


@dataclass
class GraphNode:
    id: str
    node_type: str  # document | note | memory
    label: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphEdge:
    source: str
    target: str
    relationship_type: str
    weight: Optional[float] = None
    depth: int = 1


@dataclass
class UnifiedGraph:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)

    def node_ids(self) -> Set[str]:
        return {n.id for n in self.nodes}

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GraphMatch:
    node: GraphNode
    score: float


@dataclass
class TimelineItem:
    timestamp: datetime
    event: str  # created | reinforced | relationship
    item_id: str
    content: str
    related_items: List[str] = field(default_factory=list)


@dataclass
class RelatedItem:
    node: GraphNode
    score: float
    relationship_type: str


@dataclass
class NoteRelationships:
    note_id: str
    related_notes: List[RelatedItem] = field(default_factory=list)
    related_memories: List[RelatedItem] = field(default_factory=list)


def _document_node(document: Document) -> GraphNode:
    return GraphNode(
        id=doc_key(document.id),
        node_type="document",
        label=document.title or "",
        metadata={"document_id": document.id},
    )


def _note_node(note: Note) -> GraphNode:
    return GraphNode(
        id=note_key(note.id),
        node_type="note",
        label=note.content,
        metadata={"note_id": note.id, "document_id": note.document_id, "page_number": note.page_number},
    )


def _memory_node(entity: MemoryEntity) -> GraphNode:
    return GraphNode(
        id=mem_key(entity.id),
        node_type="memory",
        label=entity.text,
        metadata={
            "memory_id": entity.id,
            "entity_type": entity.entity_type,
            "confidence": entity.confidence,
            "document_id": entity.source_document_id,
        },
    )


class UnifiedGraphService:
    """Graph queries over one owner's documents, notes and memories."""

    def __init__(self, db: AsyncSession, embedding_service: Optional[EmbeddingService] = None):
        self.db = db
        self.store = VectorStore(db)
        self.embedding_service = embedding_service or get_embedding_service()
        self.memory_search = MemorySearchService(db, embedding_service=self.embedding_service)

    async def _require(self, model, resource: str, resource_id: str, owner_id: str):
        record = await self.store.get(model, resource_id, owner_id)
        if record is None:
            raise AuthorizationError(resource, resource_id)
        return record

    async def _documents_by_id(self, owner_id: str, ids: Iterable[str]) -> Dict[str, Document]:
        ids = list(ids)
        if not ids:
            return {}
        rows = await self.store.scalars(
            select(Document).where(Document.owner_id == owner_id, Document.id.in_(ids))
        )
        return {d.id: d for d in rows}

    # ── Document-centric graph ───────────────────────────────────────

    async def _document_neighbors(self, owner_id: str, document_id: str) -> List[Tuple[str, float]]:
        edges = await self.store.scalars(
            select(DocumentRelationship).where(
                DocumentRelationship.owner_id == owner_id,
                or_(
                    DocumentRelationship.source_doc_id == document_id,
                    DocumentRelationship.target_doc_id == document_id,
                ),
            )
        )
        neighbors = [
            (e.target_doc_id if e.source_doc_id == document_id else e.source_doc_id, e.similarity)
            for e in edges
        ]
        neighbors.sort(key=lambda n: (-n[1], n[0]))
        return neighbors

    async def get_document_centric_graph(
        self,
        document_id: str,
        owner_id: str,
        depth: int = 2,
        include_annotations: bool = False,
    ) -> UnifiedGraph:
        """
        Breadth-first walk of document relationship edges from ``document_id``.

        Only documents within ``depth`` hops are returned; each document is
        expanded at most once however many paths reach it.
        """
        root = await self._require(Document, "document", document_id, owner_id)
        max_depth = clamp_depth(depth)

        documents: Dict[str, Document] = {root.id: root}
        visited: Dict[str, int] = {root.id: 0}
        edges: List[GraphEdge] = []
        seen_pairs: Set[Tuple[str, str]] = set()
        queue = deque([root.id])

        while queue:
            current = queue.popleft()
            current_depth = visited[current]
            if current_depth >= max_depth:
                continue
            neighbors = await self._document_neighbors(owner_id, current)
            documents.update(
                await self._documents_by_id(owner_id, (n for n, _ in neighbors if n not in documents))
            )
            for neighbor, similarity in neighbors:
                # Edges to a document row that no longer exists are left out
                if neighbor not in documents:
                    continue
                if neighbor not in visited:
                    visited[neighbor] = current_depth + 1
                    queue.append(neighbor)
                pair = (min(current, neighbor), max(current, neighbor))
                if pair in seen_pairs:
                    continue
                seen_pairs.add(pair)
                edges.append(GraphEdge(
                    source=doc_key(current),
                    target=doc_key(neighbor),
                    relationship_type="similar_to",
                    weight=similarity,
                    depth=current_depth + 1,
                ))

        graph = UnifiedGraph(edges=edges)
        for doc_id, hops in visited.items():
            node = _document_node(documents[doc_id])
            node.metadata["depth"] = hops
            graph.nodes.append(node)

        if include_annotations:
            await self._add_annotations(graph, root, owner_id)

        logger.debug(
            f"Document graph for {document_id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges (depth {max_depth})"
        )
        return graph

    async def _add_annotations(self, graph: UnifiedGraph, root: Document, owner_id: str) -> None:
        notes = await self.store.scalars(
            select(Note)
            .where(Note.owner_id == owner_id, Note.document_id == root.id)
            .order_by(Note.page_number, Note.created_at, Note.id)
            .limit(ANNOTATION_LIMIT)
        )
        for note in notes:
            graph.nodes.append(_note_node(note))
            graph.edges.append(GraphEdge(source=doc_key(root.id), target=note_key(note.id), relationship_type="contains"))

        memories = await self.store.scalars(
            select(MemoryEntity)
            .where(MemoryEntity.owner_id == owner_id, MemoryEntity.source_document_id == root.id)
            .order_by(MemoryEntity.created_at, MemoryEntity.id)
            .limit(ANNOTATION_LIMIT)
        )
        for entity in memories:
            graph.nodes.append(_memory_node(entity))
            graph.edges.append(GraphEdge(source=doc_key(root.id), target=mem_key(entity.id), relationship_type="extracted_from"))

    # ── Memory graph ─────────────────────────────────────────────────

    async def get_memory_graph(self, memory_id: str, owner_id: str, depth: int = 1) -> UnifiedGraph:
        """Breadth-first walk of memory relationship edges (either direction)."""
        root = await self._require(MemoryEntity, "memory", memory_id, owner_id)
        max_depth = clamp_depth(depth)

        visited: Dict[str, int] = {root.id: 0}
        edge_ids: Set[str] = set()
        edges: List[GraphEdge] = []
        queue = deque([root.id])

        while queue:
            current = queue.popleft()
            current_depth = visited[current]
            if current_depth >= max_depth:
                continue
            relationships = await self.store.scalars(
                select(MemoryRelationship)
                .where(
                    MemoryRelationship.owner_id == owner_id,
                    or_(
                        MemoryRelationship.from_entity_id == current,
                        MemoryRelationship.to_entity_id == current,
                    ),
                )
                .order_by(MemoryRelationship.weight.desc(), MemoryRelationship.id)
            )
            for rel in relationships:
                neighbor = rel.to_entity_id if rel.from_entity_id == current else rel.from_entity_id
                if neighbor not in visited:
                    visited[neighbor] = current_depth + 1
                    queue.append(neighbor)
                if rel.id in edge_ids:
                    continue
                edge_ids.add(rel.id)
                edges.append(GraphEdge(
                    source=mem_key(rel.from_entity_id),
                    target=mem_key(rel.to_entity_id),
                    relationship_type=rel.kind,
                    weight=rel.weight,
                    depth=current_depth + 1,
                ))

        entities = await self.store.scalars(
            select(MemoryEntity).where(MemoryEntity.owner_id == owner_id, MemoryEntity.id.in_(list(visited)))
        )
        by_id = {e.id: e for e in entities}
        nodes = []
        for entity_id, hops in visited.items():
            if entity_id in by_id:
                node = _memory_node(by_id[entity_id])
                node.metadata["depth"] = hops
                nodes.append(node)
        present = {n.id for n in nodes}
        edges = [e for e in edges if e.source in present and e.target in present]
        return UnifiedGraph(nodes=nodes, edges=edges)

    # ── Memory paths, hubs and clusters ──────────────────────────────

    async def _memory_adjacency(self, owner_id: str) -> Dict[str, List[MemoryRelationship]]:
        relationships = await self.store.scalars(
            select(MemoryRelationship)
            .where(MemoryRelationship.owner_id == owner_id)
            .order_by(MemoryRelationship.weight.desc(), MemoryRelationship.id)
        )
        adjacency: Dict[str, List[MemoryRelationship]] = defaultdict(list)
        for rel in relationships:
            adjacency[rel.from_entity_id].append(rel)
            adjacency[rel.to_entity_id].append(rel)
        return adjacency

    async def find_path(
        self,
        from_memory_id: str,
        to_memory_id: str,
        owner_id: str,
        max_hops: Optional[int] = None,
    ) -> Optional[List[GraphEdge]]:
        """
        Shortest chain of memory relationships linking two memories, edges
        followed in either direction.

        Returns ``[]`` when both ids are the same memory and ``None`` when no
        chain of at most ``max_hops`` edges exists.
        """
        await self._require(MemoryEntity, "memory", from_memory_id, owner_id)
        await self._require(MemoryEntity, "memory", to_memory_id, owner_id)
        if from_memory_id == to_memory_id:
            return []

        max_hops = max_hops if max_hops is not None else settings.memory_path_max_hops
        adjacency = await self._memory_adjacency(owner_id)

        parents: Dict[str, Tuple[Optional[str], Optional[MemoryRelationship]]] = {from_memory_id: (None, None)}
        hops = {from_memory_id: 0}
        queue = deque([from_memory_id])
        while queue:
            current = queue.popleft()
            if current == to_memory_id:
                break
            if hops[current] >= max_hops:
                continue
            for rel in adjacency.get(current, []):
                neighbor = rel.to_entity_id if rel.from_entity_id == current else rel.from_entity_id
                if neighbor in parents:
                    continue
                parents[neighbor] = (current, rel)
                hops[neighbor] = hops[current] + 1
                queue.append(neighbor)

        if to_memory_id not in parents:
            return None

        path: List[GraphEdge] = []
        node = to_memory_id
        while parents[node][0] is not None:
            previous, rel = parents[node]
            path.append(GraphEdge(
                source=mem_key(rel.from_entity_id),
                target=mem_key(rel.to_entity_id),
                relationship_type=rel.kind,
                weight=rel.weight,
                depth=hops[node],
            ))
            node = previous
        path.reverse()
        return path

    async def get_central_memories(self, owner_id: str, limit: int = 10) -> List[GraphNode]:
        """Memories with the most relationships; ``metadata["degree"]`` holds the count."""
        if limit <= 0:
            return []
        adjacency = await self._memory_adjacency(owner_id)
        entities = await self.store.scalars(select(MemoryEntity).where(MemoryEntity.owner_id == owner_id))

        ranked = sorted(entities, key=lambda e: (-len(adjacency.get(e.id, [])), e.id))
        nodes = []
        for entity in ranked[:limit]:
            node = _memory_node(entity)
            node.metadata["degree"] = len(adjacency.get(entity.id, []))
            nodes.append(node)
        return nodes

    async def cluster_memories(self, owner_id: str, threshold: Optional[float] = None) -> Dict[str, List[str]]:
        """
        Greedy similarity clusters over the owner's embedded memories.

        Memories are taken oldest first; each one not yet clustered seeds a
        cluster and claims every unclustered memory at least ``threshold``
        similar to it. Keys are seed ids, values list the seed first.
        """
        threshold = threshold if threshold is not None else settings.memory_cluster_threshold
        entities = await self.store.scalars(
            select(MemoryEntity)
            .where(MemoryEntity.owner_id == owner_id, MemoryEntity.embedding.isnot(None))
            .order_by(MemoryEntity.created_at, MemoryEntity.id)
        )
        if not entities:
            return {}

        matrix = np.vstack([np.asarray(e.embedding, dtype=float) for e in entities])
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        unit = matrix / norms[:, None]
        similarities = unit @ unit.T

        clusters: Dict[str, List[str]] = {}
        clustered: Set[int] = set()
        for i, seed in enumerate(entities):
            if i in clustered:
                continue
            clustered.add(i)
            members = [seed.id]
            for j in range(i + 1, len(entities)):
                if j not in clustered and admits(similarities[i, j], threshold):
                    clustered.add(j)
                    members.append(entities[j].id)
            clusters[seed.id] = members
        return clusters

    # ── Search ───────────────────────────────────────────────────────

    async def search_across_graphs(self, owner_id: str, query: str, limit: int = 20) -> List[GraphMatch]:
        """Documents, memories and notes similar to ``query``, merged by score."""
        if not query or not query.strip() or limit <= 0:
            return []

        threshold = settings.graph_search_threshold
        vector = await self.embedding_service.embed(query)

        doc_hits = await self.store.similarity_search(
            DocumentEmbedding, vector, owner_id=owner_id, k=limit, min_score=threshold
        )
        memory_hits = await self.store.similarity_search(
            MemoryEntity, vector, owner_id=owner_id, k=limit, min_score=threshold
        )
        note_hits = await self.store.similarity_search(
            Note, vector, owner_id=owner_id, k=limit, min_score=threshold
        )

        documents = await self._documents_by_id(owner_id, (h.record.document_id for h in doc_hits))
        matches = [
            GraphMatch(node=_document_node(documents[h.record.document_id]), score=h.score)
            for h in doc_hits if h.record.document_id in documents
        ]
        matches += [GraphMatch(node=_memory_node(h.record), score=h.score) for h in memory_hits]
        matches += [GraphMatch(node=_note_node(h.record), score=h.score) for h in note_hits]

        matches.sort(key=lambda m: (-m.score, m.node.id))
        return matches[:limit]

    # ── Timeline ─────────────────────────────────────────────────────

    async def get_timeline(self, concept: str, owner_id: str, limit: int = 100) -> List[TimelineItem]:
        """When memories about ``concept`` appeared, were reinforced and got linked."""
        hits = await self.memory_search.search(owner_id=owner_id, query=concept, limit=limit)
        if not hits:
            return []

        items: List[TimelineItem] = []
        ids = []
        for hit in hits:
            entity = hit.entity
            ids.append(entity.id)
            items.append(TimelineItem(
                timestamp=entity.created_at,
                event="created",
                item_id=mem_key(entity.id),
                content=entity.text,
            ))
            if entity.last_reinforced_at and entity.created_at and entity.last_reinforced_at > entity.created_at:
                items.append(TimelineItem(
                    timestamp=entity.last_reinforced_at,
                    event="reinforced",
                    item_id=mem_key(entity.id),
                    content=entity.text,
                ))

        relationships = await self.store.scalars(
            select(MemoryRelationship).where(
                MemoryRelationship.owner_id == owner_id,
                or_(
                    MemoryRelationship.from_entity_id.in_(ids),
                    MemoryRelationship.to_entity_id.in_(ids),
                ),
            )
        )
        for rel in relationships:
            items.append(TimelineItem(
                timestamp=rel.created_at,
                event="relationship",
                item_id=rel.id,
                content=rel.kind,
                related_items=[mem_key(rel.from_entity_id), mem_key(rel.to_entity_id)],
            ))

        items.sort(key=lambda i: (i.timestamp, i.item_id, i.event))
        return items

    # ── Note relationships ───────────────────────────────────────────

    async def get_note_relationships(self, note_id: str, owner_id: str, limit: int = 20) -> NoteRelationships:
        """
        Notes and memories similar to one note.

        A note without a stored embedding is embedded for this query only.
        """
        note = await self._require(Note, "note", note_id, owner_id)
        vector = note.embedding
        if vector is None:
            vector = await self.embedding_service.embed(note.content)

        threshold = settings.note_relationship_threshold
        note_hits = await self.store.similarity_search(
            Note, vector, owner_id=owner_id, k=limit, min_score=threshold, exclude_ids=[note.id]
        )
        memory_hits = await self.store.similarity_search(
            MemoryEntity, vector, owner_id=owner_id, k=limit, min_score=threshold
        )

        return NoteRelationships(
            note_id=note.id,
            related_notes=[
                RelatedItem(node=_note_node(h.record), score=h.score, relationship_type=note_relationship_label(h.score))
                for h in note_hits
            ],
            related_memories=[
                RelatedItem(node=_memory_node(h.record), score=h.score, relationship_type=note_relationship_label(h.score))
                for h in memory_hits
            ],
        )
