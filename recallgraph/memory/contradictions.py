"""Ledger of conflicting property assertions.

A contradiction is opened when a merge overwrites a property value that
disagrees with the stored one. At most one unresolved contradiction exists
per (entity, property); later conflicts leave it untouched. Nothing here
ever resolves a contradiction on its own.
"""

import json
from typing import Any, Optional

import aiosqlite
from loguru import logger

from recallgraph.memory.locks import KeyedLock
from recallgraph.memory.models import Contradiction, ContradictionStatus
from recallgraph.memory.properties import clamp_confidence, union_sources
from recallgraph.memory.store import GraphStore
from recallgraph.utils.ids import new_id, now_ms


class ContradictionTracker:
    """Records, lists and closes contradictions in ``knowledge_contradictions``."""

    def __init__(self, store: GraphStore, default_confidence: float = 0.7):
        self.store = store
        self.default_confidence = default_confidence
        self._locks = KeyedLock()

    async def record(
        self,
        entity_id: str,
        property_name: str,
        old_value: Any,
        new_value: Any,
        old_sources: Optional[list[str]] = None,
        new_sources: Optional[list[str]] = None,
        confidence: Optional[float] = None,
        relationship_id: Optional[str] = None,
        related_entity_ids: Optional[list[str]] = None,
    ) -> str:
        """
        Open a contradiction unless one is already open for this property.

        Args:
            entity_id: Entity (or relationship) whose property disagrees
            property_name: The disputed property key
            old_value: Value currently stored
            new_value: Incoming value
            old_sources: Provenance of the stored value
            new_sources: Provenance of the incoming value
            confidence: Confidence of the stored assertion
            relationship_id: Set when the disputed property is on a relationship
            related_entity_ids: Entities involved (defaults to ``[entity_id]``)

        Returns:
            Id of the new contradiction, or of the existing unresolved one.
        """
        async with self._locks.hold((entity_id, property_name)):
            existing = await self.store.fetch_value(
                """
                SELECT id FROM knowledge_contradictions
                WHERE entity_id = ? AND property_name = ? AND status = ?
                LIMIT 1
                """,
                (entity_id, property_name, ContradictionStatus.UNRESOLVED.value),
            )
            if existing:
                logger.debug(f"Contradiction already open for {entity_id}.{property_name}: {existing}")
                return existing

            contradiction_id = new_id()
            now = now_ms()
            await self.store.execute(
                """
                INSERT INTO knowledge_contradictions (
                    id, entity_id, property_name, conflicting_values,
                    related_entity_ids, related_relationship_ids, sources,
                    confidence, status, resolution, resolved_value, created, updated
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?)
                """,
                (
                    contradiction_id,
                    entity_id,
                    property_name,
                    json.dumps([old_value, new_value]),
                    json.dumps(related_entity_ids or [entity_id]),
                    json.dumps([relationship_id] if relationship_id else []),
                    json.dumps(union_sources(list(old_sources or []), new_sources)),
                    clamp_confidence(confidence, self.default_confidence),
                    ContradictionStatus.UNRESOLVED.value,
                    now,
                    now,
                ),
            )

        logger.info(f"Contradiction recorded on {entity_id}.{property_name}: {old_value!r} vs {new_value!r}")
        return contradiction_id

    async def _close(
        self,
        contradiction_id: str,
        status: ContradictionStatus,
        resolution: Optional[str],
        resolved_value: Any = None,
    ) -> bool:
        count = await self.store.execute(
            """
            UPDATE knowledge_contradictions
            SET status = ?, resolution = ?, resolved_value = ?, updated = ?
            WHERE id = ?
            """,
            (
                status.value,
                resolution,
                json.dumps(resolved_value) if status == ContradictionStatus.RESOLVED else None,
                now_ms(),
                contradiction_id,
            ),
        )
        if count:
            logger.info(f"Contradiction {contradiction_id} marked {status.value}")
        return count > 0

    async def resolve(self, contradiction_id: str, resolved_value: Any, resolution: str = "") -> bool:
        """Mark a contradiction resolved with the winning value.

        Returns:
            False if the id is unknown.
        """
        return await self._close(contradiction_id, ContradictionStatus.RESOLVED, resolution, resolved_value)

    async def ignore(self, contradiction_id: str, reason: str = "") -> bool:
        """Mark a contradiction ignored. Returns False if the id is unknown."""
        return await self._close(contradiction_id, ContradictionStatus.IGNORED, reason)

    async def get(self, contradiction_id: str) -> Optional[Contradiction]:
        row = await self.store.fetch_one(
            "SELECT * FROM knowledge_contradictions WHERE id = ?", (contradiction_id,)
        )
        return self._row_to_contradiction(row) if row else None

    async def get_for_entity(self, entity_id: str) -> list[Contradiction]:
        """All contradictions about one entity, newest first."""
        rows = await self.store.fetch_all(
            """
            SELECT * FROM knowledge_contradictions
            WHERE entity_id = ?
            ORDER BY updated DESC
            """,
            (entity_id,),
        )
        return [self._row_to_contradiction(r) for r in rows]

    async def list_unresolved(self, limit: int = 100, offset: int = 0) -> list[Contradiction]:
        """Open contradictions, most confident first."""
        rows = await self.store.fetch_all(
            """
            SELECT * FROM knowledge_contradictions
            WHERE status = ?
            ORDER BY confidence DESC, updated DESC
            LIMIT ? OFFSET ?
            """,
            (ContradictionStatus.UNRESOLVED.value, limit, offset),
        )
        return [self._row_to_contradiction(r) for r in rows]

    async def delete_for_entity(self, entity_id: str) -> int:
        """
        Remove contradictions about an entity and about its relationships.

        Must run before the entity row is deleted, while its relationships
        are still there to be found.
        """
        return await self.store.execute(
            """
            DELETE FROM knowledge_contradictions
            WHERE entity_id = ?
               OR entity_id IN (
                   SELECT id FROM knowledge_relationships
                   WHERE source_entity_id = ? OR target_entity_id = ?
               )
            """,
            (entity_id, entity_id, entity_id),
        )

    async def count(self) -> int:
        return int(await self.store.fetch_value(
            "SELECT COUNT(*) FROM knowledge_contradictions", default=0
        ))

    async def unresolved_count(self) -> int:
        return int(await self.store.fetch_value(
            "SELECT COUNT(*) FROM knowledge_contradictions WHERE status = ?",
            (ContradictionStatus.UNRESOLVED.value,),
            default=0,
        ))

    def _row_to_contradiction(self, row: aiosqlite.Row) -> Contradiction:
        """Convert a database row to a Contradiction object."""
        resolved_value = None
        if row['resolved_value'] is not None:
            resolved_value = json.loads(row['resolved_value'])

        return Contradiction(
            id=row['id'],
            entity_id=row['entity_id'],
            property_name=row['property_name'],
            conflicting_values=json.loads(row['conflicting_values']),
            sources=json.loads(row['sources']),
            confidence=row['confidence'],
            status=ContradictionStatus(row['status']),
            resolution=row['resolution'],
            resolved_value=resolved_value,
            related_entity_ids=json.loads(row['related_entity_ids']),
            related_relationship_ids=json.loads(row['related_relationship_ids']),
            created=row['created'],
            updated=row['updated'],
        )
