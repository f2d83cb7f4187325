import json
from decimal import Decimal

import pytest

from snaptrack.core.errors import QueueError
from snaptrack.models.schemas import CapturedImage, OfflineQueueItem, ReceiptFields
from snaptrack.services.offline_queue import FileOfflineQueue


def _item(image: CapturedImage, vendor: str = "Corner Shop") -> OfflineQueueItem:
    return OfflineQueueItem(
        local_id="local_1",
        fields=ReceiptFields(vendor=vendor, amount="4.20", tags="food"),
        image=image,
        enqueued_at_ns=0,
    )


@pytest.mark.asyncio
async def test_append_copies_image_and_persists_index(tmp_path, image):
    queue = FileOfflineQueue(str(tmp_path / "q"))
    stored = await queue.append(_item(image))

    assert stored.enqueued_at_ns > 0
    copied = tmp_path / "q" / "images"
    assert stored.image.uri.startswith(str(copied))
    assert (copied / stored.image.uri.rsplit("/", 1)[-1]).read_bytes() == image.data

    index = json.loads((tmp_path / "q" / "queue.json").read_text())
    assert index[0]["item_id"] == stored.item_id
    assert index[0]["fields"]["vendor"] == "Corner Shop"


@pytest.mark.asyncio
async def test_items_survive_a_new_queue_instance(tmp_path, image):
    await FileOfflineQueue(str(tmp_path)).append(_item(image, "First"))
    await FileOfflineQueue(str(tmp_path)).append(_item(image, "Second"))

    items = await FileOfflineQueue(str(tmp_path)).drain_all()
    assert [i.fields.vendor for i in items] == ["First", "Second"]
    assert items[0].enqueued_at_ns < items[1].enqueued_at_ns
    assert items[0].fields.amount == Decimal("4.20")
    assert items[0].image.read_bytes() == image.data


@pytest.mark.asyncio
async def test_replace_and_remove(tmp_path, image):
    queue = FileOfflineQueue(str(tmp_path))
    stored = await queue.append(_item(image))
    retried = stored.model_copy(update={"attempts": 1, "last_error": "timeout"})
    await queue.replace(stored, retried)
    assert (await queue.drain_all())[0].attempts == 1

    await queue.remove(retried)
    assert await queue.drain_all() == []
    assert not list((tmp_path / "images").iterdir())
    assert await queue.pending_count() == 0


@pytest.mark.asyncio
async def test_replace_unknown_item_raises(tmp_path, image):
    queue = FileOfflineQueue(str(tmp_path))
    with pytest.raises(QueueError):
        await queue.replace(_item(image), _item(image))


@pytest.mark.asyncio
async def test_missing_image_file_is_queue_error(tmp_path):
    queue = FileOfflineQueue(str(tmp_path))
    missing = CapturedImage(uri=str(tmp_path / "gone.jpg"))
    with pytest.raises(QueueError):
        await queue.append(_item(missing))
    assert await queue.drain_all() == []


@pytest.mark.asyncio
async def test_corrupt_index_is_queue_error(tmp_path, image):
    (tmp_path / "queue.json").write_text("{not json")
    queue = FileOfflineQueue(str(tmp_path))
    with pytest.raises(QueueError):
        await queue.append(_item(image))
    with pytest.raises(QueueError):
        await queue.drain_all()


@pytest.mark.asyncio
async def test_unreadable_entries_survive_rewrites(tmp_path, image):
    queue = FileOfflineQueue(str(tmp_path))
    first = await queue.append(_item(image, "Known"))
    index_path = tmp_path / "queue.json"
    future_entry = {"item_id": "offline_future", "format": 99}
    index_path.write_text(json.dumps(json.loads(index_path.read_text()) + [future_entry]))

    assert [i.item_id for i in await queue.drain_all()] == [first.item_id]
    second = await queue.append(_item(image, "Later"))
    await queue.remove(first)

    raw = json.loads(index_path.read_text())
    assert future_entry in raw
    assert [e["item_id"] for e in raw if "fields" in e] == [second.item_id]
