"""
Tests for memory extraction: dedup, reinforcement and failure handling
"""

import pytest
from sqlalchemy import func, select

from readmind.db import Document, MemoryEntity, MemoryRelationship, Note
from readmind.services.memory_extractor import MemoryExtractionService

from fakes import FakeEmbeddingService, FakeLLMService, at_similarity, vec

OWNER = "owner-a"

DARK_MODE_CONVERSATION = [
    {"role": "user", "content": "Can you make the reader easier on the eyes?"},
    {"role": "assistant", "content": "Sure, there are a few display options."},
    {"role": "user", "content": "I prefer dark mode when reading at night."},
    {"role": "assistant", "content": "Noted, dark mode it is."},
    {"role": "user", "content": "Also, what is entropy in this chapter?"},
    {"role": "assistant", "content": "Entropy measures disorder in a system."},
]

DARK_MODE_OUTPUT = {
    "entities": [
        {"type": "preference", "text": "I prefer dark mode"},
        {"type": "concept", "text": "Entropy"},
    ],
    "relationships": [],
}


async def count(db, model, owner_id=OWNER) -> int:
    result = await db.execute(select(func.count()).select_from(model).where(model.owner_id == owner_id))
    return result.scalar_one()


def make_service(db, output, vectors=None, **kwargs):
    embedder = kwargs.pop("embedder", None) or FakeEmbeddingService(vectors)
    llm = kwargs.pop("llm", None) or FakeLLMService(output)
    return MemoryExtractionService(db, embedding_service=embedder, llm_service=llm)


# ============ End-to-end ============

@pytest.mark.asyncio
async def test_dark_mode_preference_is_reinforced_not_duplicated(db_session):
    service = make_service(db_session, DARK_MODE_OUTPUT, {
        "I prefer dark mode": vec(1),
        "Entropy": vec(0, 1),
    })

    first = await service.extract(OWNER, "conv-1", DARK_MODE_CONVERSATION)
    assert first.success
    assert first.entities_created == 2

    preference = (await db_session.execute(
        select(MemoryEntity).where(MemoryEntity.entity_type == "preference")
    )).scalars().one()
    assert preference.normalized_text == "i prefer dark mode"
    confidence_before = preference.confidence

    second = await service.extract(OWNER, "conv-1", DARK_MODE_CONVERSATION)
    assert second.success
    assert second.entities_created == 0
    assert second.entities_reinforced == 2

    assert await count(db_session, MemoryEntity) == 2
    preferences = (await db_session.execute(
        select(MemoryEntity).where(MemoryEntity.entity_type == "preference")
    )).scalars().all()
    assert len(preferences) == 1
    assert preferences[0].confidence > confidence_before
    assert preferences[0].reinforcement_count == 1


@pytest.mark.asyncio
async def test_reinforcement_caps_confidence(db_session):
    service = make_service(db_session, {"entities": [{"type": "fact", "text": "Water boils at 100C"}]})

    for _ in range(8):
        await service.extract(OWNER, "conv-1", [{"role": "user", "content": "Water boils at 100C"}])

    entity = (await db_session.execute(select(MemoryEntity))).scalars().one()
    assert entity.confidence == pytest.approx(1.0)
    assert entity.reinforcement_count == 7


@pytest.mark.asyncio
async def test_embedding_is_not_rewritten_on_reinforcement(db_session):
    embedder = FakeEmbeddingService({"Entropy": vec(1)})
    service = make_service(db_session, {"entities": [{"type": "concept", "text": "Entropy"}]}, embedder=embedder)
    await service.extract(OWNER, "conv-1", [{"role": "user", "content": "entropy?"}])

    embedder.register("Entropy", vec(0, 1))
    await service.extract(OWNER, "conv-2", [{"role": "user", "content": "entropy again"}])

    entity = (await db_session.execute(select(MemoryEntity))).scalars().one()
    assert list(entity.embedding)[:2] == [1.0, 0.0]
    assert entity.source_conversation_id == "conv-1"


# ============ Near-duplicate threshold ============

@pytest.mark.asyncio
async def test_near_duplicate_above_threshold_collapses(db_session):
    service = make_service(
        db_session,
        [
            {"entities": [{"type": "concept", "text": "Neural networks"}]},
            {"entities": [{"type": "concept", "text": "Artificial neural networks"}]},
        ],
        {"Neural networks": vec(1), "Artificial neural networks": at_similarity(0.95)},
    )

    await service.extract(OWNER, "conv-1", [{"role": "user", "content": "a"}])
    result = await service.extract(OWNER, "conv-2", [{"role": "user", "content": "b"}])

    assert result.entities_reinforced == 1
    assert await count(db_session, MemoryEntity) == 1


@pytest.mark.asyncio
async def test_near_duplicate_below_threshold_stays_distinct(db_session):
    service = make_service(
        db_session,
        [
            {"entities": [{"type": "concept", "text": "Neural networks"}]},
            {"entities": [{"type": "concept", "text": "Decision trees"}]},
        ],
        {"Neural networks": vec(1), "Decision trees": at_similarity(0.90)},
    )

    await service.extract(OWNER, "conv-1", [{"role": "user", "content": "a"}])
    result = await service.extract(OWNER, "conv-2", [{"role": "user", "content": "b"}])

    assert result.entities_created == 1
    assert await count(db_session, MemoryEntity) == 2


@pytest.mark.asyncio
async def test_near_duplicate_requires_same_type(db_session):
    service = make_service(
        db_session,
        [
            {"entities": [{"type": "concept", "text": "Entropy"}]},
            {"entities": [{"type": "question", "text": "Entropy?"}]},
        ],
        {"Entropy": vec(1), "Entropy?": vec(1)},
    )

    await service.extract(OWNER, "conv-1", [{"role": "user", "content": "a"}])
    await service.extract(OWNER, "conv-2", [{"role": "user", "content": "b"}])

    assert await count(db_session, MemoryEntity) == 2


@pytest.mark.asyncio
async def test_dedup_is_scoped_to_owner(db_session):
    output = {"entities": [{"type": "concept", "text": "Entropy"}]}
    service = make_service(db_session, output, {"Entropy": vec(1)})

    await service.extract("owner-a", "conv-1", [{"role": "user", "content": "a"}])
    result = await service.extract("owner-b", "conv-1", [{"role": "user", "content": "a"}])

    assert result.entities_created == 1
    assert await count(db_session, MemoryEntity, "owner-a") == 1
    assert await count(db_session, MemoryEntity, "owner-b") == 1


@pytest.mark.asyncio
async def test_in_batch_duplicates_collapse(db_session):
    service = make_service(db_session, {
        "entities": [
            {"type": "concept", "text": "Entropy"},
            {"type": "concept", "text": "  entropy "},
        ]
    })

    result = await service.extract(OWNER, "conv-1", [{"role": "user", "content": "a"}])

    assert result.entities_created == 1
    assert len(result.entity_ids) == 1
    assert await count(db_session, MemoryEntity) == 1


# ============ Relationships ============

@pytest.mark.asyncio
async def test_relationships_created_then_strengthened(db_session):
    output = {
        "entities": [
            {"type": "insight", "text": "Entropy always increases"},
            {"type": "concept", "text": "Entropy"},
        ],
        "relationships": [{"from": 0, "to": 1, "type": "explains", "strength": 0.6}],
    }
    service = make_service(db_session, output, {
        "Entropy always increases": vec(1),
        "Entropy": vec(0, 1),
    })

    first = await service.extract(OWNER, "conv-1", [{"role": "user", "content": "a"}])
    assert first.relationships_created == 1

    second = await service.extract(OWNER, "conv-1", [{"role": "user", "content": "a"}])
    assert second.relationships_created == 0
    assert second.relationships_reinforced == 1

    edge = (await db_session.execute(select(MemoryRelationship))).scalars().one()
    assert edge.kind == "explains"
    assert edge.weight == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_self_loop_after_dedup_is_dropped(db_session):
    output = {
        "entities": [
            {"type": "concept", "text": "Entropy"},
            {"type": "concept", "text": "ENTROPY"},
        ],
        "relationships": [{"from": 0, "to": 1}],
    }
    service = make_service(db_session, output)

    result = await service.extract(OWNER, "conv-1", [{"role": "user", "content": "a"}])

    assert result.success
    assert result.relationships_created == 0
    assert await count(db_session, MemoryRelationship) == 0


# ============ Failures ============

@pytest.mark.asyncio
async def test_malformed_output_fails_without_writes(db_session):
    service = make_service(db_session, "I could not find any entities, sorry.")

    result = await service.extract(OWNER, "conv-1", [{"role": "user", "content": "a"}])

    assert not result.success
    assert "not JSON" in result.error
    assert await count(db_session, MemoryEntity) == 0


@pytest.mark.asyncio
async def test_empty_extraction_is_success(db_session):
    service = make_service(db_session, {"entities": []})

    result = await service.extract(OWNER, "conv-1", [{"role": "user", "content": "hi"}])

    assert result.success
    assert result.entities_created == 0


@pytest.mark.asyncio
async def test_no_messages_fails(db_session):
    llm = FakeLLMService()
    service = make_service(db_session, None, llm=llm)

    result = await service.extract(OWNER, "conv-1", [])

    assert not result.success
    assert llm.prompts == []


@pytest.mark.asyncio
async def test_llm_unavailable_fails(db_session):
    service = make_service(db_session, None, llm=FakeLLMService(fail=True))

    result = await service.extract(OWNER, "conv-1", [{"role": "user", "content": "a"}])

    assert not result.success
    assert result.error.startswith("provider unavailable")


@pytest.mark.asyncio
async def test_embedding_failure_skips_candidates(db_session):
    service = make_service(
        db_session,
        {"entities": [{"type": "concept", "text": "Entropy"}]},
        embedder=FakeEmbeddingService(fail=True),
    )

    result = await service.extract(OWNER, "conv-1", [{"role": "user", "content": "a"}])

    assert result.success
    assert result.entities_created == 0
    assert await count(db_session, MemoryEntity) == 0


class PartlyBrokenEmbedder(FakeEmbeddingService):
    """Raises an unexpected error for one text and embeds the rest."""

    async def embed(self, text: str) -> list:
        if text == "Entropy":
            raise RuntimeError("model crashed")
        return await super().embed(text)


@pytest.mark.asyncio
async def test_unexpected_embedding_error_skips_only_that_candidate(db_session):
    service = make_service(db_session, DARK_MODE_OUTPUT, embedder=PartlyBrokenEmbedder())

    result = await service.extract(OWNER, "conv-1", DARK_MODE_CONVERSATION)

    assert result.success
    assert result.entities_created == 1
    stored = (await db_session.execute(select(MemoryEntity.entity_type))).scalars().all()
    assert stored == ["preference"]


# ============ Prompt windowing ============

def test_prompt_keeps_most_recent_messages():
    service = make_service(None, None)
    messages = [{"role": "user", "content": f"message number {i}"} for i in range(30)]

    prompt, used = service.build_prompt(messages)

    assert used == 20
    assert "message number 29" in prompt
    assert "message number 9\n" not in prompt
    assert "message number 10" in prompt


def test_prompt_drops_oldest_over_token_budget():
    service = make_service(None, None)
    # 2000 chars each after truncation, about 500 fake tokens per message
    messages = [{"role": "user", "content": f"{i}" * 5000} for i in range(15)]

    prompt, used = service.build_prompt(messages)

    assert used < 15
    assert service.llm_service.count_tokens(prompt) <= 6000
    assert "14" * 1000 in prompt


# ============ Notes ============

@pytest.mark.asyncio
async def test_extract_from_document_notes(db_session):
    db_session.add(Document(id="doc-1", owner_id=OWNER, title="Thermodynamics"))
    db_session.add(Note(owner_id=OWNER, document_id="doc-1", content="Entropy never decreases", page_number=4))
    db_session.add(Note(owner_id="owner-b", document_id="doc-1", content="Someone else's note", page_number=1))
    await db_session.commit()

    llm = FakeLLMService({"entities": [{"type": "insight", "text": "Entropy never decreases"}]})
    service = make_service(db_session, None, llm=llm)

    result = await service.extract_from_notes(OWNER, document_id="doc-1")

    assert result.success
    assert result.entities_created == 1
    assert "Entropy never decreases" in llm.prompts[0]
    assert "Someone else's note" not in llm.prompts[0]
    assert '"Thermodynamics"' in llm.prompts[0]

    entity = (await db_session.execute(select(MemoryEntity))).scalars().one()
    assert entity.source_conversation_id == "notes:doc-1"
    assert entity.source_document_id == "doc-1"


@pytest.mark.asyncio
async def test_extract_from_notes_needs_a_selection(db_session):
    service = make_service(db_session, None)

    assert not (await service.extract_from_notes(OWNER)).success
    assert not (await service.extract_from_notes(OWNER, document_id="missing")).success
