from pathlib import Path

import pytest

from hearth.exceptions import RecordNotFoundError
from hearth.memory_entries import MemoryEntryStore


def _store(tmp_path: Path) -> MemoryEntryStore:
    return MemoryEntryStore(tmp_path / "entries.db")


@pytest.mark.asyncio
async def test_add_normalizes_tags_and_type(tmp_path: Path):
    store = _store(tmp_path)
    entry = await store.add("  Sam prefers green tea  ", "Knowledge", "Drinks, prefs,drinks")

    assert entry.text == "Sam prefers green tea"
    assert entry.memory_type == "knowledge"
    assert entry.tags == ["drinks", "prefs"]
    assert entry.to_dict()["type"] == "knowledge"
    assert (await store.get(entry.id)).text == entry.text
    await store.close()


@pytest.mark.asyncio
async def test_add_rejects_empty_text_and_unknown_type(tmp_path: Path):
    store = _store(tmp_path)
    with pytest.raises(ValueError):
        await store.add("   ")
    with pytest.raises(ValueError):
        await store.add("fact", "forever")
    await store.close()


@pytest.mark.asyncio
async def test_search_matches_all_words_and_filters(tmp_path: Path):
    store = _store(tmp_path)
    await store.add("Project Hearth ships on Friday", "long_term", ["work"])
    await store.add("Hearth daemon listens on port 8765", "knowledge", ["work", "ops"])
    await store.add("Buy bread", "short_term", ["errands"])

    by_words = await store.search("hearth port")
    by_type = await store.search("hearth", memory_type="long_term")
    by_tag = await store.search(tags=["ops"])
    nothing = await store.search("unicorn")

    assert [entry.text for entry in by_words] == ["Hearth daemon listens on port 8765"]
    assert [entry.text for entry in by_type] == ["Project Hearth ships on Friday"]
    assert [entry.text for entry in by_tag] == ["Hearth daemon listens on port 8765"]
    assert nothing == []
    await store.close()


@pytest.mark.asyncio
async def test_tags_and_stats_count_entries(tmp_path: Path):
    store = _store(tmp_path)
    await store.add("a", "knowledge", ["work"])
    await store.add("b", "long_term", ["work", "home"])

    assert await store.tags() == {"work": 2, "home": 1}
    stats = await store.stats()
    assert stats["total"] == 2
    assert stats["by_type"] == {"short_term": 0, "long_term": 1, "knowledge": 1}
    assert stats["tags"] == 2
    await store.close()


@pytest.mark.asyncio
async def test_update_changes_fields(tmp_path: Path):
    store = _store(tmp_path)
    entry = await store.add("old text", tags="x")

    updated = await store.update(entry.id, text="new text", memory_type="short_term", tags=[])

    assert updated.text == "new text"
    assert updated.memory_type == "short_term"
    assert updated.tags == []
    assert (await store.get(entry.id)).text == "new text"
    await store.close()


@pytest.mark.asyncio
async def test_delete_then_lookup_fails(tmp_path: Path):
    store = _store(tmp_path)
    entry = await store.add("temporary")
    await store.delete(entry.id)

    with pytest.raises(RecordNotFoundError):
        await store.get(entry.id)
    with pytest.raises(RecordNotFoundError):
        await store.delete(entry.id)
    assert await store.list() == []
    await store.close()
