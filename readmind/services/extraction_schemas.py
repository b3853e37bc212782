"""
Schema-enforced memory extraction.

Pydantic models for the entities and relationships the extraction LLM
returns, the prompt that describes them, and a parser that turns raw model
output into a ``ParsedExtraction`` result value instead of raising.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from readmind.db.models import MemoryEntityType, RelationshipKind
from readmind.errors import MalformedExtraction

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Case-fold, trim and collapse whitespace. The dedup key for memories."""
    return _WHITESPACE.sub(" ", (text or "").casefold()).strip()


# ── Candidate Schemas ───────────────────────────────────────────────

class EntityCandidate(BaseModel):
    """A memory entity proposed by the LLM."""
    type: MemoryEntityType
    text: str = Field(min_length=1, max_length=2000)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("text")
    @classmethod
    def _strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("empty text")
        return v

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_dict(cls, v):
        return v if isinstance(v, dict) else {}


class RelationshipCandidate(BaseModel):
    """A directed edge between two candidates, by index into the entity list."""
    from_index: int = Field(alias="from", ge=0)
    to_index: int = Field(alias="to", ge=0)
    type: RelationshipKind = RelationshipKind.RELATES_TO
    strength: Optional[float] = Field(None, ge=0.0, le=1.0)

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


@dataclass
class ParsedExtraction:
    """Outcome of parsing one LLM response.

    ``ok`` is False only when the output as a whole is unusable; individual
    bad candidates are dropped and counted in ``skipped``.
    """
    entities: List[EntityCandidate] = field(default_factory=list)
    relationships: List[RelationshipCandidate] = field(default_factory=list)
    skipped: int = 0
    error: Optional[MalformedExtraction] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_extraction(raw: str) -> ParsedExtraction:
    """Parse and validate the JSON object returned by the extraction LLM."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        return ParsedExtraction(error=MalformedExtraction(f"not JSON: {e}"))

    if not isinstance(payload, dict):
        return ParsedExtraction(error=MalformedExtraction("top level is not an object"))

    raw_entities = payload.get("entities", [])
    raw_relationships = payload.get("relationships") or []
    if not isinstance(raw_entities, list):
        return ParsedExtraction(error=MalformedExtraction("'entities' is not a list"))
    if not isinstance(raw_relationships, list):
        raw_relationships = []

    parsed = ParsedExtraction()
    # Relationship indices refer to the raw entity list
    index_map: Dict[int, int] = {}
    for raw_index, item in enumerate(raw_entities):
        try:
            candidate = EntityCandidate.model_validate(item)
        except ValidationError:
            parsed.skipped += 1
            continue
        index_map[raw_index] = len(parsed.entities)
        parsed.entities.append(candidate)

    for item in raw_relationships:
        try:
            rel = RelationshipCandidate.model_validate(item)
        except ValidationError:
            parsed.skipped += 1
            continue
        if rel.from_index not in index_map or rel.to_index not in index_map:
            parsed.skipped += 1
            continue
        rel.from_index = index_map[rel.from_index]
        rel.to_index = index_map[rel.to_index]
        parsed.relationships.append(rel)

    return parsed


# ── Prompt Generation ────────────────────────────────────────────────

ENTITY_TYPE_GUIDE = {
    MemoryEntityType.CONCEPT: "academic terms, theories, frameworks, methodologies",
    MemoryEntityType.QUESTION: "questions asked by the user",
    MemoryEntityType.INSIGHT: "insights or conclusions reached",
    MemoryEntityType.REFERENCE: "document references (titles, authors, papers)",
    MemoryEntityType.ACTION: "actions taken (notes created, highlights made, sections read)",
    MemoryEntityType.DOCUMENT: "the document under discussion",
    MemoryEntityType.PERSON: "people mentioned",
    MemoryEntityType.EVENT: "events or occasions",
    MemoryEntityType.FACT: "standalone facts stated by the user",
    MemoryEntityType.PREFERENCE: "the user's stated preferences",
}


def build_extraction_prompt(conversation_text: str, document_title: Optional[str] = None) -> str:
    """The user message sent to the extraction LLM."""
    type_lines = "\n".join(f"- {t.value}: {desc}" for t, desc in ENTITY_TYPE_GUIDE.items())
    kinds = " | ".join(k.value for k in RelationshipKind)
    types = " | ".join(t.value for t in MemoryEntityType)
    document_line = (
        f'\nThis conversation is about the document: "{document_title}"\n' if document_title else ""
    )

    return f"""Extract semantic entities from this conversation. Entity types:
{type_lines}
{document_line}
Return ONLY a JSON object with this structure:
{{
  "entities": [
    {{"type": "{types}", "text": "the entity text (specific and concise)", "metadata": {{}}}}
  ],
  "relationships": [
    {{"from": 0, "to": 1, "type": "{kinds}", "strength": 0.8}}
  ]
}}

"from" and "to" are indices into the entities array. Be thorough but concise:
5-15 entities per conversation. If nothing is worth remembering, return {{"entities": []}}.

Conversation:
{conversation_text}"""
