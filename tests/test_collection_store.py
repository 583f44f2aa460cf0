import pytest

from reflib.errors import NotFound, ValidationFailure
from reflib.models import DEFAULT_COLLECTION_COLOR, Reference


def test_create_and_list(collections):
    a = collections.create("Reading list")
    b = collections.create("Thesis", color="#ff0000")
    assert a.color == DEFAULT_COLLECTION_COLOR
    assert [c.name for c in collections.list_collections()] == ["Reading list", "Thesis"]
    assert collections.get(b.id).color == "#ff0000"


@pytest.mark.parametrize("name", ["", "   ", None])
def test_empty_name_rejected(collections, name):
    with pytest.raises(ValidationFailure):
        collections.create(name)


def test_rename(collections):
    c = collections.create("Old")
    assert collections.rename(c.id, "New").name == "New"
    assert collections.get(c.id).name == "New"
    with pytest.raises(ValidationFailure):
        collections.rename(c.id, " ")
    with pytest.raises(NotFound):
        collections.rename("missing", "x")


def test_recolor(collections):
    c = collections.create("C")
    assert collections.recolor(c.id, "#00ff00").color == "#00ff00"
    assert collections.get(c.id).color == "#00ff00"
    with pytest.raises(NotFound):
        collections.recolor("missing", "#000000")


def test_delete_cascades_to_references_and_nothing_else(collections, store):
    keep = collections.create("Keep")
    drop = collections.create("Drop")
    both = store.create(Reference(title="Both", collection_ids=[keep.id, drop.id], tags=["t"], notes="n"))
    only_drop = store.create(Reference(title="Only drop", collection_ids=[drop.id]))
    outside = store.create(Reference(title="Outside", collection_ids=[keep.id]))

    changed = collections.delete(drop.id)

    assert sorted(changed) == sorted([both.id, only_drop.id])
    after_both = store.get(both.id)
    assert after_both.collection_ids == [keep.id]
    assert after_both.model_dump(exclude={"collection_ids"}) == both.model_dump(exclude={"collection_ids"})
    assert store.get(only_drop.id).collection_ids == []
    assert store.get(outside.id) == outside
    with pytest.raises(NotFound):
        collections.get(drop.id)
    assert [c.id for c in collections.list_collections()] == [keep.id]


def test_delete_missing_collection(collections):
    with pytest.raises(NotFound):
        collections.delete("missing")


def test_membership_and_count(collections, store):
    c = collections.create("C")
    ref = store.create(Reference(title="T"))
    collections.add_reference(c.id, ref.id)
    collections.add_reference(c.id, ref.id)
    assert store.get(ref.id).collection_ids == [c.id]
    assert collections.count_references(c.id) == 1
    collections.remove_reference(c.id, ref.id)
    assert collections.count_references(c.id) == 0


def test_add_to_missing_collection(collections, store):
    ref = store.create(Reference(title="T"))
    with pytest.raises(NotFound):
        collections.add_reference("missing", ref.id)
