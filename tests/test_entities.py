"""Tests for entity merge-on-write and entity reads."""

import asyncio

import pytest

from recallgraph.errors import StoreError, ValidationError


class TestEntityMerge:
    """Tests for EntityStore.create_or_update."""

    @pytest.mark.asyncio
    async def test_create_new_entity(self, plain_graph):
        """Test creating a new entity."""
        entity_id = await plain_graph.create_or_update_entity(
            "John", "person", {"age": 30}, sources=["chat"]
        )
        entity = await plain_graph.get_entity(entity_id)

        assert entity.name == "John"
        assert entity.entity_type == "person"
        assert entity.properties == {"age": 30}
        assert entity.confidence == 0.7
        assert entity.sources == ["chat"]
        assert entity.created == entity.updated

    @pytest.mark.asyncio
    async def test_same_key_merges_into_one_row(self, plain_graph):
        """Same name and type merge into one row."""
        first = await plain_graph.create_or_update_entity(
            "John", "person", {"age": 30}, confidence=0.6, sources=["chat"]
        )
        second = await plain_graph.create_or_update_entity(
            "John", "person", {"city": "Paris"}, confidence=0.9, sources=["email", "chat"]
        )
        entity = await plain_graph.get_entity(first)

        assert first == second
        assert entity.properties == {"age": 30, "city": "Paris"}
        assert entity.confidence == 0.9
        assert entity.sources == ["chat", "email"]
        assert await plain_graph.entities.count() == 1

    @pytest.mark.asyncio
    async def test_confidence_never_decreases(self, plain_graph):
        """Test merged confidence keeps the maximum."""
        entity_id = await plain_graph.create_or_update_entity("John", "person", confidence=0.9)
        await plain_graph.create_or_update_entity("John", "person", confidence=0.2)
        await plain_graph.create_or_update_entity("John", "person")

        entity = await plain_graph.get_entity(entity_id)
        assert entity.confidence == 0.9

    @pytest.mark.asyncio
    async def test_same_name_different_type_is_distinct(self, plain_graph):
        """Same name with a different type is a separate entity."""
        person = await plain_graph.create_or_update_entity("Jordan", "person")
        place = await plain_graph.create_or_update_entity("Jordan", "place")

        assert person != place
        assert len(await plain_graph.entities.get_by_name("Jordan")) == 2

    @pytest.mark.asyncio
    async def test_conflicting_value_records_contradiction(self, plain_graph):
        """Test a conflicting property value records a contradiction."""
        entity_id = await plain_graph.create_or_update_entity(
            "John", "person", {"age": 30}, sources=["chat"]
        )
        await plain_graph.create_or_update_entity("John", "person", {"age": 31}, sources=["email"])

        entity = await plain_graph.get_entity(entity_id)
        open_items = await plain_graph.get_unresolved_contradictions()

        assert entity.properties["age"] == 31
        assert len(open_items) == 1
        contradiction = open_items[0]
        assert contradiction.entity_id == entity_id
        assert contradiction.property_name == "age"
        assert contradiction.conflicting_values == [30, 31]
        assert contradiction.sources == ["chat", "email"]
        assert contradiction.confidence == 0.7

    @pytest.mark.asyncio
    async def test_concurrent_merges_produce_one_entity(self, plain_graph):
        """Concurrent writes of one key produce a single entity."""
        ids = await asyncio.gather(*[
            plain_graph.create_or_update_entity("Ada", "person", {f"k{i}": i}, sources=[f"s{i}"])
            for i in range(10)
        ])

        assert len(set(ids)) == 1
        entity = await plain_graph.get_entity(ids[0])
        assert len(entity.properties) == 10
        assert len(entity.sources) == 10

    @pytest.mark.asyncio
    async def test_invalid_input_rejected(self, plain_graph):
        """Test empty names, types and bad properties are rejected."""
        with pytest.raises(ValidationError):
            await plain_graph.create_or_update_entity("", "person")
        with pytest.raises(ValidationError):
            await plain_graph.create_or_update_entity("John", "  ")
        with pytest.raises(ValidationError):
            await plain_graph.create_or_update_entity("John", "person", {"x": object()})
        assert await plain_graph.entities.count() == 0

    @pytest.mark.asyncio
    async def test_batch_create_or_update(self, graph):
        """Test batch writes merge repeats and embed each entity."""
        ids = await graph.entities.batch_create_or_update([
            {"name": "Ada", "entity_type": "person"},
            {"name": "London", "type": "place", "properties": {"country": "UK"}},
            {"name": "Ada", "entity_type": "person", "properties": {"field": "math"}},
        ])

        assert ids[0] == ids[2]
        assert ids[0] != ids[1]
        assert f"entity:{ids[0]}" in graph.vector_index
        assert f"entity:{ids[1]}" in graph.vector_index

    @pytest.mark.asyncio
    async def test_repeated_merges_do_not_grow_the_index(self, graph):
        """Test merging the same entity keeps exactly one stored vector."""
        for i in range(50):
            entity_id = await graph.create_or_update_entity("Ada", "person", {"visits": i})

        assert len(graph.vector_index) == 1
        assert graph.vector_index.get_stats()["stored"] == 1
        stored = await graph.embeddings.get(entity_id)
        assert stored.text == "Ada (person)"

    @pytest.mark.asyncio
    async def test_batch_validates_every_item_before_writing(self, graph):
        """Test an invalid item anywhere in a batch leaves the store untouched."""
        with pytest.raises(ValidationError):
            await graph.entities.batch_create_or_update([
                {"name": "Ada", "entity_type": "person"},
                {"name": "", "entity_type": "person"},
            ])

        assert await graph.entities.count() == 0
        assert len(graph.vector_index) == 0

    @pytest.mark.asyncio
    async def test_batch_embeds_rows_written_before_a_store_failure(self, graph, monkeypatch):
        """Test rows written before a failing write still get their embedding."""
        original = graph.entities._merge
        calls = []

        async def failing_second_write(*args):
            calls.append(args)
            if len(calls) == 2:
                raise StoreError("disk full")
            return await original(*args)

        monkeypatch.setattr(graph.entities, "_merge", failing_second_write)
        with pytest.raises(StoreError):
            await graph.entities.batch_create_or_update([
                {"name": "Ada", "entity_type": "person"},
                {"name": "London", "entity_type": "place"},
            ])

        [ada] = await graph.entities.get_by_name("Ada")
        assert f"entity:{ada.id}" in graph.vector_index


class TestEntityReads:
    """Tests for entity lookups and listings."""

    @pytest.mark.asyncio
    async def test_get_missing_entity(self, plain_graph):
        """Unknown ids return None."""
        assert await plain_graph.get_entity("nope") is None

    @pytest.mark.asyncio
    async def test_get_by_type_orders_by_confidence(self, plain_graph):
        """Test type listings come back highest confidence first."""
        await plain_graph.create_or_update_entity("Low", "person", confidence=0.2)
        await plain_graph.create_or_update_entity("High", "person", confidence=0.9)
        await plain_graph.create_or_update_entity("Paris", "place")

        people = await plain_graph.entities.get_by_type("person")
        assert [e.name for e in people] == ["High", "Low"]

    @pytest.mark.asyncio
    async def test_search_by_property(self, plain_graph):
        """Test lookup by a property value."""
        await plain_graph.create_or_update_entity("John", "person", {"city": "Paris", "tags": ["a", "b"]})
        await plain_graph.create_or_update_entity("Jane", "person", {"city": "London"})
        await plain_graph.create_or_update_entity("Max", "person")

        in_paris = await plain_graph.entities.search_by_property("city", "Paris")
        tagged = await plain_graph.entities.search_by_property("tags", ["a", "b"])

        assert [e.name for e in in_paris] == ["John"]
        assert [e.name for e in tagged] == ["John"]

    @pytest.mark.asyncio
    async def test_search_by_text_escapes_wildcards(self, plain_graph):
        """LIKE wildcards in search text match literally."""
        await plain_graph.create_or_update_entity("100% Cotton", "material")
        await plain_graph.create_or_update_entity("1000 Cotton", "material")

        found = await plain_graph.entities.search_by_text("100%")
        assert [e.name for e in found] == ["100% Cotton"]

    @pytest.mark.asyncio
    async def test_list_with_min_confidence(self, plain_graph):
        """Test listing with a confidence floor."""
        await plain_graph.create_or_update_entity("A", "thing", confidence=0.3)
        await plain_graph.create_or_update_entity("B", "thing", confidence=0.8)

        assert [e.name for e in await plain_graph.entities.list(min_confidence=0.5)] == ["B"]
        assert await plain_graph.entities.count(min_confidence=0.5) == 1


class TestEntityDelete:
    """Tests for entity deletion."""

    @pytest.mark.asyncio
    async def test_delete_cascades(self, graph):
        """Test deleting an entity removes its relationships and contradictions."""
        john = await graph.create_or_update_entity("John", "person", {"age": 30})
        acme = await graph.create_or_update_entity("Acme", "company")
        await graph.create_or_update_relationship(john, acme, "works_at")
        await graph.create_or_update_entity("John", "person", {"age": 31})

        assert await graph.delete_entity(john)

        assert await graph.get_entity(john) is None
        assert await graph.relationships.get_by_source(john) == []
        assert await graph.contradictions.get_for_entity(john) == []
        assert f"entity:{john}" not in graph.vector_index

    @pytest.mark.asyncio
    async def test_delete_missing_entity(self, plain_graph):
        """Deleting an unknown entity returns False."""
        assert not await plain_graph.delete_entity("nope")
