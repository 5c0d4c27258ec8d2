"""Entity storage with merge-on-write.

Entities are unique per ``(name, entity_type)``. Asserting an existing pair
merges into the stored row: properties are shallow-merged (conflicting
values are recorded as contradictions first), sources are unioned and
confidence only ever goes up.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import aiosqlite
from loguru import logger

from recallgraph.config.schema import GraphConfig
from recallgraph.errors import ValidationError
from recallgraph.memory.contradictions import ContradictionTracker
from recallgraph.memory.embedding_index import EntityEmbeddingIndex
from recallgraph.memory.locks import KeyedLock
from recallgraph.memory.models import Entity
from recallgraph.memory.properties import (
    canonical_json,
    clamp_confidence,
    merge_properties,
    normalize_properties,
    normalize_value,
    union_sources,
)
from recallgraph.memory.store import GraphStore, escape_like, placeholders
from recallgraph.utils.ids import new_id, now_ms


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Entity {field_name} must be a non-empty string")
    return value.strip()


class EntityStore:
    """
    CRUD and merge-on-write for entities in ``knowledge_entities``.

    Writes to the same ``(name, type)`` are serialized per key; reads take no
    locks and are ordered by descending confidence.
    """

    def __init__(
        self,
        store: GraphStore,
        contradictions: ContradictionTracker,
        embeddings: Optional[EntityEmbeddingIndex] = None,
        config: Optional[GraphConfig] = None,
    ):
        """
        Initialize the entity store.

        Args:
            store: Backing store
            contradictions: Tracker that receives conflicting property values
            embeddings: Embedding index refreshed after writes (optional)
            config: Merge settings (default confidence, numeric tolerance)
        """
        self.store = store
        self.contradictions = contradictions
        self.embeddings = embeddings
        self.config = config or GraphConfig()
        self._locks = KeyedLock()

    # =========================================================================
    # Writes
    # =========================================================================

    async def create_or_update(
        self,
        name: str,
        entity_type: str,
        properties: Optional[dict[str, Any]] = None,
        confidence: Optional[float] = None,
        sources: Optional[list[str]] = None,
    ) -> str:
        """
        Create an entity, or merge into the existing one with the same key.

        Args:
            name: Entity name
            entity_type: Type tag ("person", "place", ...)
            properties: Properties to set or merge
            confidence: Confidence of this assertion (default 0.7 for new rows)
            sources: Provenance of this assertion

        Returns:
            The id of the created or merged entity
        """
        entity, created = await self._merge(
            *self._prepare(name, entity_type, properties, confidence, sources)
        )
        if self.embeddings is not None and (created or not await self._embedded(entity)):
            await self.embeddings.embed(entity)
        return entity.id

    async def batch_create_or_update(self, items: list[dict[str, Any]]) -> list[str]:
        """
        Apply ``create_or_update`` to many items, embedding them in one call.

        Each item is a mapping with ``name``, ``entity_type`` (or ``type``) and
        optional ``properties``, ``confidence`` and ``sources``. Every item is
        validated before the first write, and whatever was written is embedded
        even if a later write fails.

        Returns:
            Entity ids in input order
        """
        prepared = [
            self._prepare(
                item.get("name"),
                item.get("entity_type", item.get("type")),
                item.get("properties"),
                item.get("confidence"),
                item.get("sources"),
            )
            for item in items
        ]

        merged: list[Entity] = []
        created_ids: set[str] = set()
        try:
            for args in prepared:
                entity, created = await self._merge(*args)
                merged.append(entity)
                if created:
                    created_ids.add(entity.id)
        finally:
            if self.embeddings is not None and merged:
                # Same key asserted twice in one batch: embed the final row once
                latest = {e.id: e for e in merged}
                pending = [
                    e for e in latest.values()
                    if e.id in created_ids or not await self._embedded(e)
                ]
                if pending:
                    await self.embeddings.embed_batch(pending)

        logger.debug(f"Batch merged {len(merged)} entities")
        return [e.id for e in merged]

    async def _embedded(self, entity: Entity) -> bool:
        """True if the index already holds this entity's current text."""
        stored = await self.embeddings.get(entity.id)
        return stored is not None and stored.text == entity.embedding_text

    @staticmethod
    def _prepare(
        name: Any,
        entity_type: Any,
        properties: Optional[dict[str, Any]],
        confidence: Optional[float],
        sources: Optional[list[str]],
    ) -> tuple[str, str, dict[str, Any], Optional[float], list[str]]:
        return (
            _require_text(name, "name"),
            _require_text(entity_type, "type"),
            normalize_properties(properties),
            confidence,
            list(dict.fromkeys(sources or [])),
        )

    async def _merge(
        self,
        name: str,
        entity_type: str,
        incoming: dict[str, Any],
        confidence: Optional[float],
        incoming_sources: list[str],
    ) -> tuple[Entity, bool]:
        async with self._locks.hold((name, entity_type)):
            existing = await self.find(name, entity_type)
            now = now_ms()

            if existing is None:
                entity = Entity(
                    id=new_id(),
                    name=name,
                    entity_type=entity_type,
                    properties=incoming,
                    confidence=clamp_confidence(confidence, self.config.default_confidence),
                    sources=incoming_sources,
                    created=now,
                    updated=now,
                )
                await self.store.execute(
                    """
                    INSERT INTO knowledge_entities (
                        id, name, type, properties, confidence, sources, created, updated
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entity.id,
                        entity.name,
                        entity.entity_type,
                        json.dumps(entity.properties),
                        entity.confidence,
                        json.dumps(entity.sources),
                        entity.created,
                        entity.updated,
                    ),
                )
                logger.debug(f"Entity created: {entity.id} ({name}, {entity_type})")
                return entity, True

            merged, conflicts = merge_properties(
                existing.properties, incoming, self.config.contradiction_threshold
            )
            for key, old_value, new_value in conflicts:
                await self.contradictions.record(
                    existing.id,
                    key,
                    old_value,
                    new_value,
                    old_sources=existing.sources,
                    new_sources=incoming_sources,
                    confidence=existing.confidence,
                )

            new_confidence = existing.confidence
            if confidence is not None:
                new_confidence = max(existing.confidence, clamp_confidence(confidence, existing.confidence))

            existing.properties = merged
            existing.confidence = new_confidence
            existing.sources = union_sources(existing.sources, incoming_sources)
            existing.updated = now

            await self.store.execute(
                """
                UPDATE knowledge_entities
                SET properties = ?, confidence = ?, sources = ?, updated = ?
                WHERE id = ?
                """,
                (
                    json.dumps(existing.properties),
                    existing.confidence,
                    json.dumps(existing.sources),
                    existing.updated,
                    existing.id,
                ),
            )
            logger.debug(f"Entity merged: {existing.id} ({len(conflicts)} conflict(s))")
            return existing, False

    async def set_property(self, entity_id: str, key: str, value: Any) -> bool:
        """
        Overwrite a single property without recording a contradiction.

        Used to apply the winning value of a resolved contradiction.

        Returns:
            False if the entity does not exist
        """
        entity = await self.get_by_id(entity_id)
        if entity is None:
            return False

        async with self._locks.hold((entity.name, entity.entity_type)):
            current = await self.get_by_id(entity_id)
            if current is None:
                return False
            current.properties[key] = normalize_value(value)
            count = await self.store.execute(
                "UPDATE knowledge_entities SET properties = ?, updated = ? WHERE id = ?",
                (json.dumps(current.properties), now_ms(), entity_id),
            )
        return count > 0

    async def delete(self, entity_id: str) -> bool:
        """
        Delete an entity, its contradictions and (by cascade) its relationships.

        The embedding is removed best-effort; failing to do so leaves a
        dangling index entry that searches skip.

        Returns:
            True if the entity existed
        """
        await self.contradictions.delete_for_entity(entity_id)
        count = await self.store.execute(
            "DELETE FROM knowledge_entities WHERE id = ?", (entity_id,)
        )
        if not count:
            return False

        logger.debug(f"Entity deleted: {entity_id}")
        if self.embeddings is not None and not await self.embeddings.delete(entity_id):
            logger.warning(f"Embedding for deleted entity {entity_id} left dangling in the index")
        return True

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_by_id(self, entity_id: str) -> Optional[Entity]:
        """Retrieve an entity by ID."""
        row = await self.store.fetch_one(
            "SELECT * FROM knowledge_entities WHERE id = ?", (entity_id,)
        )
        return self.row_to_entity(row) if row else None

    async def get_by_ids(self, entity_ids: list[str]) -> list[Entity]:
        """Retrieve several entities, most confident first. Unknown ids are skipped."""
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return []
        rows = await self.store.fetch_all(
            f"""
            SELECT * FROM knowledge_entities
            WHERE id IN ({placeholders(len(ids))})
            ORDER BY confidence DESC
            """,
            ids,
        )
        return [self.row_to_entity(r) for r in rows]

    async def find(self, name: str, entity_type: str) -> Optional[Entity]:
        """Look up the entity with this exact identity key."""
        row = await self.store.fetch_one(
            "SELECT * FROM knowledge_entities WHERE name = ? AND type = ?",
            (name, entity_type),
        )
        return self.row_to_entity(row) if row else None

    async def get_by_name(self, name: str) -> list[Entity]:
        """All entities with this name (any type), most confident first."""
        rows = await self.store.fetch_all(
            "SELECT * FROM knowledge_entities WHERE name = ? ORDER BY confidence DESC",
            (name,),
        )
        return [self.row_to_entity(r) for r in rows]

    async def get_by_type(self, entity_type: str, limit: int = 100, offset: int = 0) -> list[Entity]:
        rows = await self.store.fetch_all(
            """
            SELECT * FROM knowledge_entities
            WHERE type = ?
            ORDER BY confidence DESC
            LIMIT ? OFFSET ?
            """,
            (entity_type, limit, offset),
        )
        return [self.row_to_entity(r) for r in rows]

    async def search_by_property(
        self, key: str, value: Any, limit: int = 100, offset: int = 0
    ) -> list[Entity]:
        """
        Find entities whose property ``key`` equals ``value``.

        SQLite narrows the candidates to rows that have the key; the value
        comparison happens on the decoded map so lists, maps and numbers
        compare structurally.
        """
        target = canonical_json(normalize_value(value))
        json_path = '$."' + key.replace('"', '\\"') + '"'
        rows = await self.store.fetch_all(
            """
            SELECT * FROM knowledge_entities
            WHERE json_type(properties, ?) IS NOT NULL
            ORDER BY confidence DESC
            """,
            (json_path,),
        )
        matches = [
            entity for entity in map(self.row_to_entity, rows)
            if key in entity.properties and canonical_json(entity.properties[key]) == target
        ]
        return matches[offset:offset + limit]

    async def list(self, limit: int = 100, offset: int = 0, min_confidence: float = 0.0) -> list[Entity]:
        rows = await self.store.fetch_all(
            """
            SELECT * FROM knowledge_entities
            WHERE confidence >= ?
            ORDER BY confidence DESC
            LIMIT ? OFFSET ?
            """,
            (min_confidence, limit, offset),
        )
        return [self.row_to_entity(r) for r in rows]

    async def list_recent(self, limit: int = 100, offset: int = 0) -> list[Entity]:
        """Most recently updated entities first."""
        rows = await self.store.fetch_all(
            "SELECT * FROM knowledge_entities ORDER BY updated DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [self.row_to_entity(r) for r in rows]

    async def search_by_text(self, text: str, limit: int = 100, offset: int = 0) -> list[Entity]:
        """Lexical "contains" match over name and type."""
        pattern = f"%{escape_like(text)}%"
        rows = await self.store.fetch_all(
            """
            SELECT * FROM knowledge_entities
            WHERE name LIKE ? ESCAPE '\\' OR type LIKE ? ESCAPE '\\'
            ORDER BY confidence DESC
            LIMIT ? OFFSET ?
            """,
            (pattern, pattern, limit, offset),
        )
        return [self.row_to_entity(r) for r in rows]

    # =========================================================================
    # Aggregates
    # =========================================================================

    async def count(self, min_confidence: float = 0.0) -> int:
        return int(await self.store.fetch_value(
            "SELECT COUNT(*) FROM knowledge_entities WHERE confidence >= ?",
            (min_confidence,),
            default=0,
        ))

    async def type_distribution(self) -> dict[str, int]:
        rows = await self.store.fetch_all(
            "SELECT type, COUNT(*) AS n FROM knowledge_entities GROUP BY type ORDER BY n DESC"
        )
        return {row['type']: row['n'] for row in rows}

    async def average_confidence(self) -> float:
        return float(await self.store.fetch_value(
            "SELECT AVG(confidence) FROM knowledge_entities", default=0.0
        ))

    def row_to_entity(self, row: aiosqlite.Row) -> Entity:
        """Convert a database row to an Entity object."""
        return Entity(
            id=row['id'],
            name=row['name'],
            entity_type=row['type'],
            properties=json.loads(row['properties']) if row['properties'] else {},
            confidence=row['confidence'],
            sources=json.loads(row['sources']) if row['sources'] else [],
            created=row['created'],
            updated=row['updated'],
        )
