"""
Tests for the unified graph: traversal bounds, search, timeline, note links
"""

from datetime import datetime, timedelta

import pytest

from readmind.db import (
    Document, DocumentEmbedding, DocumentRelationship,
    MemoryEntity, MemoryRelationship, Note,
)
from readmind.errors import AuthorizationError
from readmind.services.graph_service import (
    UnifiedGraphService,
    clamp_depth,
    note_relationship_label,
)

from fakes import FakeEmbeddingService, at_similarity, vec

OWNER = "owner-a"
CHAIN = ["doc-1", "doc-2", "doc-3", "doc-4", "doc-5", "doc-6"]


async def add_document_chain(db, owner_id=OWNER, ids=CHAIN):
    for document_id in ids:
        db.add(Document(id=document_id, owner_id=owner_id, title=document_id))
    for source, target in zip(ids, ids[1:]):
        db.add(DocumentRelationship(owner_id=owner_id, source_doc_id=source, target_doc_id=target, similarity=0.8))
    await db.commit()


def document_ids(graph):
    return {n.metadata["document_id"] for n in graph.nodes if n.node_type == "document"}


def test_clamp_depth():
    assert clamp_depth(0) == 1
    assert clamp_depth(3) == 3
    assert clamp_depth(99) == 4


@pytest.mark.parametrize("score,label", [
    (0.95, "references"),
    (0.90, "references"),
    (0.87, "illustrates"),
    (0.85, "illustrates"),
    (0.80, "complements"),
])
def test_note_relationship_label(score, label):
    assert note_relationship_label(score) == label


# ============ Document graph ============

@pytest.mark.asyncio
async def test_depth_one_returns_direct_neighbors(db_session):
    await add_document_chain(db_session)
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService())

    graph = await service.get_document_centric_graph("doc-3", OWNER, depth=1)

    assert document_ids(graph) == {"doc-2", "doc-3", "doc-4"}
    assert len(graph.edges) == 2
    assert all(e.relationship_type == "similar_to" for e in graph.edges)


@pytest.mark.asyncio
async def test_depth_is_monotonic_and_capped(db_session):
    await add_document_chain(db_session)
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService())

    previous = set()
    for depth in range(1, 6):
        graph = await service.get_document_centric_graph("doc-1", OWNER, depth=depth)
        nodes = document_ids(graph)
        assert previous <= nodes
        assert all(n.metadata["depth"] <= min(depth, 4) for n in graph.nodes)
        previous = nodes

    capped = await service.get_document_centric_graph("doc-1", OWNER, depth=50)
    assert document_ids(capped) == {"doc-1", "doc-2", "doc-3", "doc-4", "doc-5"}


@pytest.mark.asyncio
async def test_cycles_do_not_duplicate_nodes(db_session):
    await add_document_chain(db_session, ids=["doc-1", "doc-2", "doc-3"])
    db_session.add(DocumentRelationship(owner_id=OWNER, source_doc_id="doc-1", target_doc_id="doc-3", similarity=0.7))
    await db_session.commit()
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService())

    graph = await service.get_document_centric_graph("doc-1", OWNER, depth=4)

    assert len(graph.nodes) == 3
    assert len(graph.edges) == 3


@pytest.mark.asyncio
async def test_document_graph_is_owner_scoped(db_session):
    await add_document_chain(db_session, ids=["doc-1", "doc-2"])
    await add_document_chain(db_session, owner_id="owner-b", ids=["doc-x", "doc-y"])
    # an edge from another owner touching this owner's document is ignored
    db_session.add(DocumentRelationship(owner_id="owner-b", source_doc_id="doc-1", target_doc_id="doc-x", similarity=0.99))
    await db_session.commit()
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService())

    graph = await service.get_document_centric_graph("doc-1", OWNER, depth=4)
    assert document_ids(graph) == {"doc-1", "doc-2"}

    with pytest.raises(AuthorizationError):
        await service.get_document_centric_graph("doc-x", OWNER)
    with pytest.raises(AuthorizationError):
        await service.get_document_centric_graph("missing", OWNER)


@pytest.mark.asyncio
async def test_document_graph_skips_edges_to_missing_documents(db_session):
    await add_document_chain(db_session, ids=["doc-1", "doc-2"])
    db_session.add_all([
        DocumentRelationship(owner_id=OWNER, source_doc_id="doc-1", target_doc_id="doc-gone", similarity=0.95),
        DocumentRelationship(owner_id=OWNER, source_doc_id="doc-2", target_doc_id="doc-gone", similarity=0.9),
    ])
    await db_session.commit()
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService())

    graph = await service.get_document_centric_graph("doc-1", OWNER, depth=3)

    assert document_ids(graph) == {"doc-1", "doc-2"}
    assert "doc:doc-gone" not in graph.node_ids()
    endpoints = {e.source for e in graph.edges} | {e.target for e in graph.edges}
    assert endpoints <= graph.node_ids()


@pytest.mark.asyncio
async def test_annotations_add_notes_and_memories(db_session):
    await add_document_chain(db_session, ids=["doc-1", "doc-2"])
    db_session.add(Note(id="note-1", owner_id=OWNER, document_id="doc-1", content="Key idea", page_number=2))
    db_session.add(MemoryEntity(id="mem-1", owner_id=OWNER, entity_type="concept", text="Entropy",
                                normalized_text="entropy", source_document_id="doc-1"))
    await db_session.commit()
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService())

    plain = await service.get_document_centric_graph("doc-1", OWNER, depth=1)
    annotated = await service.get_document_centric_graph("doc-1", OWNER, depth=1, include_annotations=True)

    assert "note:note-1" not in plain.node_ids()
    assert {"note:note-1", "mem:mem-1"} <= annotated.node_ids()
    kinds = {(e.target, e.relationship_type) for e in annotated.edges}
    assert ("note:note-1", "contains") in kinds
    assert ("mem:mem-1", "extracted_from") in kinds


# ============ Memory graph ============

@pytest.mark.asyncio
async def test_memory_graph_walks_both_directions(db_session):
    for i in range(1, 5):
        db_session.add(MemoryEntity(id=f"m{i}", owner_id=OWNER, entity_type="concept",
                                    text=f"Concept {i}", normalized_text=f"concept {i}"))
    db_session.add_all([
        MemoryRelationship(owner_id=OWNER, from_entity_id="m1", to_entity_id="m2", kind="supports", weight=0.9),
        MemoryRelationship(owner_id=OWNER, from_entity_id="m3", to_entity_id="m2", kind="cites", weight=0.5),
        MemoryRelationship(owner_id=OWNER, from_entity_id="m3", to_entity_id="m4", kind="relates_to", weight=0.5),
    ])
    await db_session.commit()
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService())

    one_hop = await service.get_memory_graph("m2", OWNER, depth=1)
    two_hops = await service.get_memory_graph("m2", OWNER, depth=2)

    assert one_hop.node_ids() == {"mem:m1", "mem:m2", "mem:m3"}
    assert two_hops.node_ids() == {"mem:m1", "mem:m2", "mem:m3", "mem:m4"}
    assert {e.relationship_type for e in two_hops.edges} == {"supports", "cites", "relates_to"}

    with pytest.raises(AuthorizationError):
        await service.get_memory_graph("m2", "owner-b")


async def add_memory_chain(db):
    """m1 -> m2 <- m3 -> m4, with m5 unconnected"""
    for i in range(1, 6):
        db.add(MemoryEntity(id=f"m{i}", owner_id=OWNER, entity_type="concept",
                            text=f"Concept {i}", normalized_text=f"concept {i}"))
    db.add_all([
        MemoryRelationship(owner_id=OWNER, from_entity_id="m1", to_entity_id="m2", kind="supports", weight=0.9),
        MemoryRelationship(owner_id=OWNER, from_entity_id="m3", to_entity_id="m2", kind="cites", weight=0.5),
        MemoryRelationship(owner_id=OWNER, from_entity_id="m3", to_entity_id="m4", kind="relates_to", weight=0.5),
    ])
    await db.commit()


@pytest.mark.asyncio
async def test_find_path_between_memories(db_session):
    await add_memory_chain(db_session)
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService())

    path = await service.find_path("m1", "m4", OWNER)

    assert [(e.source, e.target, e.relationship_type) for e in path] == [
        ("mem:m1", "mem:m2", "supports"),
        ("mem:m3", "mem:m2", "cites"),
        ("mem:m3", "mem:m4", "relates_to"),
    ]
    assert [e.depth for e in path] == [1, 2, 3]

    assert await service.find_path("m1", "m1", OWNER) == []
    assert await service.find_path("m1", "m5", OWNER) is None
    assert await service.find_path("m1", "m4", OWNER, max_hops=2) is None

    with pytest.raises(AuthorizationError):
        await service.find_path("m1", "m4", "owner-b")


@pytest.mark.asyncio
async def test_central_memories_ranked_by_degree(db_session):
    await add_memory_chain(db_session)
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService())

    central = await service.get_central_memories(OWNER, limit=3)

    assert [n.id for n in central] == ["mem:m2", "mem:m3", "mem:m1"]
    assert [n.metadata["degree"] for n in central] == [2, 2, 1]
    assert await service.get_central_memories("owner-b") == []
    assert await service.get_central_memories(OWNER, limit=0) == []


@pytest.mark.asyncio
async def test_cluster_memories_by_similarity(db_session):
    start = datetime(2024, 1, 1)
    db_session.add_all([
        MemoryEntity(id="m1", owner_id=OWNER, entity_type="concept", text="Entropy", normalized_text="entropy",
                     embedding=vec(1), created_at=start),
        MemoryEntity(id="m2", owner_id=OWNER, entity_type="concept", text="Disorder", normalized_text="disorder",
                     embedding=at_similarity(0.9), created_at=start + timedelta(minutes=1)),
        MemoryEntity(id="m3", owner_id=OWNER, entity_type="concept", text="Sonnets", normalized_text="sonnets",
                     embedding=vec(0, 0, 1), created_at=start + timedelta(minutes=2)),
        MemoryEntity(id="m4", owner_id=OWNER, entity_type="concept", text="Heat death", normalized_text="heat death",
                     embedding=at_similarity(0.85), created_at=start + timedelta(minutes=3)),
        MemoryEntity(id="m5", owner_id=OWNER, entity_type="concept", text="Unembedded", normalized_text="unembedded",
                     created_at=start + timedelta(minutes=4)),
        MemoryEntity(id="m6", owner_id="owner-b", entity_type="concept", text="Entropy", normalized_text="entropy",
                     embedding=vec(1), created_at=start),
    ])
    await db_session.commit()
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService())

    assert await service.cluster_memories(OWNER, threshold=0.8) == {"m1": ["m1", "m2", "m4"], "m3": ["m3"]}
    # m2 and m4 are about 0.99 similar to each other but below 0.95 to m1
    assert await service.cluster_memories(OWNER, threshold=0.95) == {
        "m1": ["m1"], "m2": ["m2", "m4"], "m3": ["m3"],
    }
    assert await service.cluster_memories("owner-c") == {}


# ============ Search ============

@pytest.mark.asyncio
async def test_search_across_graphs(db_session):
    db_session.add_all([
        Document(id="doc-1", owner_id=OWNER, title="Thermodynamics"),
        DocumentEmbedding(document_id="doc-1", owner_id=OWNER, embedding=vec(1), source_text_hash="h"),
        MemoryEntity(id="mem-1", owner_id=OWNER, entity_type="concept", text="Entropy",
                     normalized_text="entropy", embedding=at_similarity(0.9)),
        Note(id="note-1", owner_id=OWNER, content="Heat death", embedding=at_similarity(0.75)),
        Note(id="note-2", owner_id=OWNER, content="Sonnets", embedding=at_similarity(0.5)),
        MemoryEntity(id="mem-x", owner_id="owner-b", entity_type="concept", text="Entropy",
                     normalized_text="entropy", embedding=vec(1)),
    ])
    await db_session.commit()
    embedder = FakeEmbeddingService({"entropy and heat": vec(1)})
    service = UnifiedGraphService(db_session, embedding_service=embedder)

    matches = await service.search_across_graphs(OWNER, "entropy and heat")

    assert [m.node.id for m in matches] == ["doc:doc-1", "mem:mem-1", "note:note-1"]
    assert [m.node.node_type for m in matches] == ["document", "memory", "note"]
    assert matches[0].score == 1.0

    limited = await service.search_across_graphs(OWNER, "entropy and heat", limit=1)
    assert [m.node.id for m in limited] == ["doc:doc-1"]


# ============ Timeline ============

@pytest.mark.asyncio
async def test_timeline_is_chronological(db_session):
    t0 = datetime(2026, 1, 1, 12, 0, 0)
    db_session.add_all([
        MemoryEntity(id="m1", owner_id=OWNER, entity_type="concept", text="Entropy",
                     normalized_text="entropy", embedding=vec(1),
                     created_at=t0, last_reinforced_at=t0 + timedelta(days=3)),
        MemoryEntity(id="m2", owner_id=OWNER, entity_type="question", text="Why does entropy grow?",
                     normalized_text="why does entropy grow?", embedding=at_similarity(0.9),
                     created_at=t0 + timedelta(days=1), last_reinforced_at=t0 + timedelta(days=1)),
        MemoryRelationship(id="r1", owner_id=OWNER, from_entity_id="m2", to_entity_id="m1",
                           kind="explains", created_at=t0 + timedelta(days=2)),
    ])
    await db_session.commit()
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService({"entropy": vec(1)}))

    items = await service.get_timeline("entropy", OWNER)

    assert [(i.event, i.item_id) for i in items] == [
        ("created", "mem:m1"),
        ("created", "mem:m2"),
        ("relationship", "r1"),
        ("reinforced", "mem:m1"),
    ]
    assert items[2].related_items == ["mem:m2", "mem:m1"]


@pytest.mark.asyncio
async def test_timeline_for_unknown_concept_is_empty(db_session):
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService({"entropy": vec(1)}))
    assert await service.get_timeline("entropy", OWNER) == []


# ============ Note relationships ============

@pytest.mark.asyncio
async def test_note_relationships_are_labelled(db_session):
    db_session.add_all([
        Note(id="n0", owner_id=OWNER, content="Origin", embedding=vec(1)),
        Note(id="n1", owner_id=OWNER, content="Near copy", embedding=at_similarity(0.95)),
        Note(id="n2", owner_id=OWNER, content="Example", embedding=at_similarity(0.87)),
        Note(id="n3", owner_id=OWNER, content="Aside", embedding=at_similarity(0.78)),
        Note(id="n4", owner_id=OWNER, content="Unrelated", embedding=at_similarity(0.4)),
        Note(id="nx", owner_id="owner-b", content="Origin", embedding=vec(1)),
        MemoryEntity(id="m1", owner_id=OWNER, entity_type="concept", text="Origin concept",
                     normalized_text="origin concept", embedding=at_similarity(0.92)),
    ])
    await db_session.commit()
    service = UnifiedGraphService(db_session, embedding_service=FakeEmbeddingService())

    related = await service.get_note_relationships("n0", OWNER)

    assert [(r.node.id, r.relationship_type) for r in related.related_notes] == [
        ("note:n1", "references"),
        ("note:n2", "illustrates"),
        ("note:n3", "complements"),
    ]
    assert [(r.node.id, r.relationship_type) for r in related.related_memories] == [("mem:m1", "references")]

    with pytest.raises(AuthorizationError):
        await service.get_note_relationships("nx", OWNER)


@pytest.mark.asyncio
async def test_note_without_embedding_is_embedded_on_demand(db_session):
    db_session.add_all([
        Note(id="n0", owner_id=OWNER, content="Fresh note"),
        Note(id="n1", owner_id=OWNER, content="Older note", embedding=vec(1)),
    ])
    await db_session.commit()
    embedder = FakeEmbeddingService({"Fresh note": vec(1)})
    service = UnifiedGraphService(db_session, embedding_service=embedder)

    related = await service.get_note_relationships("n0", OWNER)

    assert [r.node.id for r in related.related_notes] == ["note:n1"]
    assert embedder.calls == ["Fresh note"]
    note = await db_session.get(Note, "n0")
    assert note.embedding is None
