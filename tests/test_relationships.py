"""Tests for relationship merge-on-write and contradictions."""

import pytest

from recallgraph.errors import MissingEndpointError, ValidationError


@pytest.fixture
async def people(plain_graph):
    """Two people and a company."""
    john = await plain_graph.create_or_update_entity("John", "person")
    jane = await plain_graph.create_or_update_entity("Jane", "person")
    acme = await plain_graph.create_or_update_entity("Acme", "company")
    return john, jane, acme


class TestRelationshipMerge:
    """Tests for RelationshipStore.create_or_update."""

    @pytest.mark.asyncio
    async def test_create_relationship(self, plain_graph, people):
        """Test creating a relationship."""
        john, jane, _ = people
        rel_id = await plain_graph.create_or_update_relationship(
            john, jane, "knows", {"since": 2020}, confidence=0.8, sources=["chat"]
        )
        rel = await plain_graph.get_relationship(rel_id)

        assert rel.source_entity_id == john
        assert rel.target_entity_id == jane
        assert rel.relationship_type == "knows"
        assert rel.properties == {"since": 2020}
        assert rel.confidence == 0.8

    @pytest.mark.asyncio
    async def test_direction_is_part_of_the_key(self, plain_graph, people):
        """Reversed edges are distinct relationships."""
        john, jane, _ = people
        forward = await plain_graph.create_or_update_relationship(john, jane, "knows")
        backward = await plain_graph.create_or_update_relationship(jane, john, "knows")
        again = await plain_graph.create_or_update_relationship(john, jane, "knows", sources=["x"])

        assert forward != backward
        assert forward == again
        assert len(await plain_graph.relationships.get_between(john, jane)) == 2

    @pytest.mark.asyncio
    async def test_missing_endpoint_rejected_before_write(self, plain_graph, people):
        """Test a missing endpoint is rejected before any write."""
        john, _, _ = people
        with pytest.raises(MissingEndpointError) as exc_info:
            await plain_graph.create_or_update_relationship(john, "ghost", "knows")

        assert exc_info.value.missing == ["ghost"]
        assert await plain_graph.relationships.count() == 0

    @pytest.mark.asyncio
    async def test_endpoint_deleted_after_check(self, plain_graph, people, monkeypatch):
        """Test an endpoint removed between the check and the insert is reported as missing."""
        john, jane, _ = people
        stale = {john: await plain_graph.get_entity(john), jane: await plain_graph.get_entity(jane)}
        await plain_graph.store.execute("DELETE FROM knowledge_entities WHERE id = ?", (jane,))

        real_get_by_id = plain_graph.entities.get_by_id
        calls = []

        async def get_by_id(entity_id):
            calls.append(entity_id)
            # The first lookups still see both rows
            if len(calls) <= 2:
                return stale[entity_id]
            return await real_get_by_id(entity_id)

        monkeypatch.setattr(plain_graph.entities, "get_by_id", get_by_id)

        with pytest.raises(MissingEndpointError) as exc_info:
            await plain_graph.create_or_update_relationship(john, jane, "knows")

        assert exc_info.value.missing == [jane]
        assert await plain_graph.relationships.count() == 0

    @pytest.mark.asyncio
    async def test_empty_type_rejected(self, plain_graph, people):
        """An empty relationship type is rejected."""
        john, jane, _ = people
        with pytest.raises(ValidationError):
            await plain_graph.create_or_update_relationship(john, jane, "")

    @pytest.mark.asyncio
    async def test_self_loop_allowed(self, plain_graph, people):
        """Test an entity can relate to itself."""
        john, _, _ = people
        rel_id = await plain_graph.create_or_update_relationship(john, john, "mentors")
        assert (await plain_graph.get_relationship(rel_id)).other_end(john) == john

    @pytest.mark.asyncio
    async def test_relationship_contradiction(self, plain_graph, people):
        """Test conflicting edge properties record a contradiction."""
        john, _, acme = people
        rel_id = await plain_graph.create_or_update_relationship(john, acme, "works_at", {"role": "engineer"})
        await plain_graph.create_or_update_relationship(john, acme, "works_at", {"role": "manager"})

        [contradiction] = await plain_graph.get_unresolved_contradictions()
        assert contradiction.entity_id == rel_id
        assert contradiction.related_relationship_ids == [rel_id]
        assert contradiction.related_entity_ids == [john, acme]
        assert contradiction.conflicting_values == ["engineer", "manager"]


class TestRelationshipReads:
    """Tests for relationship lookups."""

    @pytest.mark.asyncio
    async def test_get_for_entities_filters(self, plain_graph, people):
        """Test lookups across several entities with filters."""
        john, jane, acme = people
        await plain_graph.create_or_update_relationship(john, jane, "knows", confidence=0.9)
        await plain_graph.create_or_update_relationship(john, acme, "works_at", confidence=0.4)
        await plain_graph.create_or_update_relationship(jane, acme, "works_at", confidence=0.8)

        around_john = await plain_graph.relationships.get_for_entities([john])
        employment = await plain_graph.relationships.get_for_entities([john, jane], ["works_at"])
        confident = await plain_graph.relationships.get_for_entities([john], min_confidence=0.5)

        assert len(around_john) == 2
        assert {r.relationship_type for r in employment} == {"works_at"}
        assert len(employment) == 2
        assert [r.relationship_type for r in confident] == ["knows"]

    @pytest.mark.asyncio
    async def test_source_and_target_lookups(self, plain_graph, people):
        """Test outgoing and incoming lookups."""
        john, jane, _ = people
        await plain_graph.create_or_update_relationship(john, jane, "knows")

        assert len(await plain_graph.relationships.get_by_source(john)) == 1
        assert await plain_graph.relationships.get_by_source(jane) == []
        assert len(await plain_graph.relationships.get_by_target(jane)) == 1

    @pytest.mark.asyncio
    async def test_delete_relationship_removes_its_contradictions(self, plain_graph, people):
        """Deleting an edge removes its contradictions."""
        john, _, acme = people
        rel_id = await plain_graph.create_or_update_relationship(john, acme, "works_at", {"role": "a"})
        await plain_graph.create_or_update_relationship(john, acme, "works_at", {"role": "b"})

        assert await plain_graph.delete_relationship(rel_id)
        assert await plain_graph.get_relationship(rel_id) is None
        assert await plain_graph.get_unresolved_contradictions() == []
        assert not await plain_graph.delete_relationship(rel_id)
