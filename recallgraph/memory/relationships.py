"""Relationship storage with merge-on-write.

Relationships are directed, typed edges unique per
``(source_entity_id, target_entity_id, relationship_type)``. Both endpoints
must exist when an edge is created or merged.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import aiosqlite
from loguru import logger

from recallgraph.config.schema import GraphConfig
from recallgraph.errors import MissingEndpointError, StoreError, ValidationError
from recallgraph.memory.contradictions import ContradictionTracker
from recallgraph.memory.entities import EntityStore
from recallgraph.memory.locks import KeyedLock
from recallgraph.memory.models import Relationship
from recallgraph.memory.properties import (
    clamp_confidence,
    merge_properties,
    normalize_properties,
    normalize_value,
    union_sources,
)
from recallgraph.memory.store import GraphStore, escape_like, placeholders
from recallgraph.utils.ids import new_id, now_ms


class RelationshipStore:
    """
    CRUD and merge-on-write for edges in ``knowledge_relationships``.

    Mirrors EntityStore: merges on the same key are serialized, conflicting
    property values go to the ContradictionTracker before being overwritten.
    """

    def __init__(
        self,
        store: GraphStore,
        entities: EntityStore,
        contradictions: ContradictionTracker,
        config: Optional[GraphConfig] = None,
    ):
        self.store = store
        self.entities = entities
        self.contradictions = contradictions
        self.config = config or GraphConfig()
        self._locks = KeyedLock()

    async def create_or_update(
        self,
        source_entity_id: str,
        target_entity_id: str,
        relationship_type: str,
        properties: Optional[dict[str, Any]] = None,
        confidence: Optional[float] = None,
        sources: Optional[list[str]] = None,
    ) -> str:
        """
        Create an edge, or merge into the existing one with the same key.

        Args:
            source_entity_id: Id of the source entity
            target_entity_id: Id of the target entity
            relationship_type: Edge type ("knows", "works_at", ...)
            properties: Properties to set or merge
            confidence: Confidence of this assertion (default 0.7 for new rows)
            sources: Provenance of this assertion

        Returns:
            The id of the created or merged relationship

        Raises:
            MissingEndpointError: if either endpoint entity does not exist
            ValidationError: on an empty type or invalid properties
        """
        if not isinstance(relationship_type, str) or not relationship_type.strip():
            raise ValidationError("Relationship type must be a non-empty string")
        relationship_type = relationship_type.strip()
        incoming = normalize_properties(properties)
        incoming_sources = list(dict.fromkeys(sources or []))

        missing = await self._missing_endpoints(source_entity_id, target_entity_id)
        if missing:
            raise MissingEndpointError(source_entity_id, target_entity_id, missing)

        key = (source_entity_id, target_entity_id, relationship_type)
        async with self._locks.hold(key):
            existing = await self.find(*key)
            now = now_ms()

            if existing is None:
                relationship_id = new_id()
                try:
                    await self.store.execute(
                        """
                        INSERT INTO knowledge_relationships (
                            id, source_entity_id, target_entity_id, type,
                            properties, confidence, sources, created, updated
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            relationship_id,
                            source_entity_id,
                            target_entity_id,
                            relationship_type,
                            json.dumps(incoming),
                            clamp_confidence(confidence, self.config.default_confidence),
                            json.dumps(incoming_sources),
                            now,
                            now,
                        ),
                    )
                except StoreError:
                    # An endpoint deleted since the check fails the foreign key
                    missing = await self._missing_endpoints(source_entity_id, target_entity_id)
                    if missing:
                        raise MissingEndpointError(source_entity_id, target_entity_id, missing) from None
                    raise
                logger.debug(
                    f"Relationship created: {relationship_id} "
                    f"({source_entity_id} -{relationship_type}-> {target_entity_id})"
                )
                return relationship_id

            merged, conflicts = merge_properties(
                existing.properties, incoming, self.config.contradiction_threshold
            )
            for prop, old_value, new_value in conflicts:
                await self.contradictions.record(
                    existing.id,
                    prop,
                    old_value,
                    new_value,
                    old_sources=existing.sources,
                    new_sources=incoming_sources,
                    confidence=existing.confidence,
                    relationship_id=existing.id,
                    related_entity_ids=[source_entity_id, target_entity_id],
                )

            new_confidence = existing.confidence
            if confidence is not None:
                new_confidence = max(existing.confidence, clamp_confidence(confidence, existing.confidence))

            await self.store.execute(
                """
                UPDATE knowledge_relationships
                SET properties = ?, confidence = ?, sources = ?, updated = ?
                WHERE id = ?
                """,
                (
                    json.dumps(merged),
                    new_confidence,
                    json.dumps(union_sources(existing.sources, incoming_sources)),
                    now,
                    existing.id,
                ),
            )
            logger.debug(f"Relationship merged: {existing.id} ({len(conflicts)} conflict(s))")
            return existing.id

    async def _missing_endpoints(self, source_entity_id: str, target_entity_id: str) -> list[str]:
        missing = []
        if await self.entities.get_by_id(source_entity_id) is None:
            missing.append(source_entity_id)
        if target_entity_id != source_entity_id and await self.entities.get_by_id(target_entity_id) is None:
            missing.append(target_entity_id)
        return missing

    async def set_property(self, relationship_id: str, key: str, value: Any) -> bool:
        """Overwrite a single property without recording a contradiction."""
        rel = await self.get_by_id(relationship_id)
        if rel is None:
            return False

        async with self._locks.hold((rel.source_entity_id, rel.target_entity_id, rel.relationship_type)):
            current = await self.get_by_id(relationship_id)
            if current is None:
                return False
            current.properties[key] = normalize_value(value)
            count = await self.store.execute(
                "UPDATE knowledge_relationships SET properties = ?, updated = ? WHERE id = ?",
                (json.dumps(current.properties), now_ms(), relationship_id),
            )
        return count > 0

    async def delete(self, relationship_id: str) -> bool:
        """Delete an edge and its contradictions. Returns True if it existed."""
        await self.contradictions.delete_for_entity(relationship_id)
        count = await self.store.execute(
            "DELETE FROM knowledge_relationships WHERE id = ?", (relationship_id,)
        )
        if count:
            logger.debug(f"Relationship deleted: {relationship_id}")
        return count > 0

    async def get_by_id(self, relationship_id: str) -> Optional[Relationship]:
        """Retrieve a relationship by ID."""
        row = await self.store.fetch_one(
            "SELECT * FROM knowledge_relationships WHERE id = ?", (relationship_id,)
        )
        return self.row_to_relationship(row) if row else None

    async def find(
        self, source_entity_id: str, target_entity_id: str, relationship_type: str
    ) -> Optional[Relationship]:
        """Look up the edge with this exact identity key."""
        row = await self.store.fetch_one(
            """
            SELECT * FROM knowledge_relationships
            WHERE source_entity_id = ? AND target_entity_id = ? AND type = ?
            """,
            (source_entity_id, target_entity_id, relationship_type),
        )
        return self.row_to_relationship(row) if row else None

    async def get_by_type(self, relationship_type: str, limit: int = 100, offset: int = 0) -> list[Relationship]:
        rows = await self.store.fetch_all(
            """
            SELECT * FROM knowledge_relationships
            WHERE type = ?
            ORDER BY confidence DESC
            LIMIT ? OFFSET ?
            """,
            (relationship_type, limit, offset),
        )
        return [self.row_to_relationship(r) for r in rows]

    async def get_by_source(self, entity_id: str) -> list[Relationship]:
        """Outgoing edges of an entity."""
        rows = await self.store.fetch_all(
            "SELECT * FROM knowledge_relationships WHERE source_entity_id = ? ORDER BY confidence DESC",
            (entity_id,),
        )
        return [self.row_to_relationship(r) for r in rows]

    async def get_by_target(self, entity_id: str) -> list[Relationship]:
        """Incoming edges of an entity."""
        rows = await self.store.fetch_all(
            "SELECT * FROM knowledge_relationships WHERE target_entity_id = ? ORDER BY confidence DESC",
            (entity_id,),
        )
        return [self.row_to_relationship(r) for r in rows]

    async def get_between(self, entity_a: str, entity_b: str) -> list[Relationship]:
        """Edges joining two entities, in either direction."""
        rows = await self.store.fetch_all(
            """
            SELECT * FROM knowledge_relationships
            WHERE (source_entity_id = ? AND target_entity_id = ?)
               OR (source_entity_id = ? AND target_entity_id = ?)
            ORDER BY confidence DESC
            """,
            (entity_a, entity_b, entity_b, entity_a),
        )
        return [self.row_to_relationship(r) for r in rows]

    async def get_for_entities(
        self,
        entity_ids: list[str],
        relationship_types: Optional[list[str]] = None,
        min_confidence: float = 0.0,
        limit: Optional[int] = None,
    ) -> list[Relationship]:
        """
        Edges touching any of the given entities.

        Args:
            entity_ids: Entities whose incoming and outgoing edges are wanted
            relationship_types: Keep only these types (None = all)
            min_confidence: Confidence floor
            limit: Maximum number of edges (None = no cap)
        """
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return []

        marks = placeholders(len(ids))
        sql = f"""
            SELECT * FROM knowledge_relationships
            WHERE (source_entity_id IN ({marks}) OR target_entity_id IN ({marks}))
              AND confidence >= ?
        """
        params: list[Any] = [*ids, *ids, min_confidence]
        if relationship_types:
            sql += f" AND type IN ({placeholders(len(relationship_types))})"
            params.extend(relationship_types)
        sql += " ORDER BY confidence DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = await self.store.fetch_all(sql, params)
        return [self.row_to_relationship(r) for r in rows]

    async def search_by_type_text(self, text: str, limit: int = 100) -> list[Relationship]:
        """Edges whose type contains ``text``."""
        rows = await self.store.fetch_all(
            """
            SELECT * FROM knowledge_relationships
            WHERE type LIKE ? ESCAPE '\\'
            ORDER BY confidence DESC
            LIMIT ?
            """,
            (f"%{escape_like(text)}%", limit),
        )
        return [self.row_to_relationship(r) for r in rows]

    async def list(self, limit: int = 100, offset: int = 0, min_confidence: float = 0.0) -> list[Relationship]:
        rows = await self.store.fetch_all(
            """
            SELECT * FROM knowledge_relationships
            WHERE confidence >= ?
            ORDER BY confidence DESC
            LIMIT ? OFFSET ?
            """,
            (min_confidence, limit, offset),
        )
        return [self.row_to_relationship(r) for r in rows]

    async def count(self, min_confidence: float = 0.0) -> int:
        return int(await self.store.fetch_value(
            "SELECT COUNT(*) FROM knowledge_relationships WHERE confidence >= ?",
            (min_confidence,),
            default=0,
        ))

    async def type_distribution(self) -> dict[str, int]:
        rows = await self.store.fetch_all(
            "SELECT type, COUNT(*) AS n FROM knowledge_relationships GROUP BY type ORDER BY n DESC"
        )
        return {row['type']: row['n'] for row in rows}

    async def average_confidence(self) -> float:
        return float(await self.store.fetch_value(
            "SELECT AVG(confidence) FROM knowledge_relationships", default=0.0
        ))

    def row_to_relationship(self, row: aiosqlite.Row) -> Relationship:
        """Convert a database row to a Relationship object."""
        return Relationship(
            id=row['id'],
            source_entity_id=row['source_entity_id'],
            target_entity_id=row['target_entity_id'],
            relationship_type=row['type'],
            properties=json.loads(row['properties']) if row['properties'] else {},
            confidence=row['confidence'],
            sources=json.loads(row['sources']) if row['sources'] else [],
            created=row['created'],
            updated=row['updated'],
        )
