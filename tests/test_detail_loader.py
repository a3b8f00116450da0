import asyncio

import pytest

from fake_mail import FakeMailClient, make_summary
from stormbox.domain.models import Attachment, MessageBody
from stormbox.infra.blob_store import LocalBlobStore
from stormbox.services.detail_loader import DetailLoader


@pytest.fixture
def store(tmp_path):
    blob_store = LocalBlobStore(str(tmp_path / "blobs"))
    yield blob_store
    blob_store.close()


def _client_with_bodies():
    client = FakeMailClient()
    logo = Attachment(blob_id="blob-logo", name="logo.png", type="image/png", cid="logo", disposition="inline")
    report = Attachment(blob_id="blob-pdf", name="report.pdf", type="application/pdf", size=2048)
    client.bodies["m1"] = MessageBody(
        html='<p>Hello</p><img src="cid:logo">',
        text="Hello",
        attachments=(logo, report),
        cid_map={"logo": "blob-logo"},
    )
    client.bodies["m2"] = MessageBody(html='<img src="cid:chart">', cid_map={"chart": "blob-chart"})
    return client


@pytest.mark.asyncio
async def test_load_resolves_inline_images_and_hides_inline_parts(store):
    loader = DetailLoader(_client_with_bodies(), store)

    detail = await loader.load(make_summary("m1", subject="Quarterly"))

    assert detail.message_id == "m1"
    assert detail.header.subject == "Quarterly"
    assert detail.header.from_ == "Ann <ann@example.com>"
    assert detail.text == "Hello"
    assert "cid:logo" not in detail.html
    assert detail.handles["logo"].url in detail.html
    assert [attachment.name for attachment in detail.attachments] == ["report.pdf"]
    assert loader.message_id == "m1"


@pytest.mark.asyncio
async def test_new_selection_releases_previous_handles(store):
    loader = DetailLoader(_client_with_bodies(), store)
    first = await loader.load(make_summary("m1"))
    old_handle = first.handles["logo"]

    second = await loader.load(make_summary("m2"))

    assert not store.is_open(old_handle)
    assert first.handles == {}
    assert list(second.handles) == ["chart"]
    assert store.open_count == 1


@pytest.mark.asyncio
async def test_clear_releases_everything(store):
    loader = DetailLoader(_client_with_bodies(), store)
    await loader.load(make_summary("m1"))

    loader.clear()

    assert loader.detail is None
    assert store.open_count == 0


@pytest.mark.asyncio
async def test_fetch_failure_falls_back_to_preview(store):
    client = FakeMailClient()
    client.fail_detail = True
    loader = DetailLoader(client, store)

    detail = await loader.load(make_summary("m7"))

    assert detail.text == "preview of m7"
    assert detail.html == ""


@pytest.mark.asyncio
async def test_empty_body_shows_preview(store):
    loader = DetailLoader(FakeMailClient(), store)

    detail = await loader.load(make_summary("m8"))

    assert detail.text == "preview of m8"


class _FullDiskStore(LocalBlobStore):
    def create(self, data, mime_type="application/octet-stream"):
        raise OSError(28, "No space left on device")


@pytest.mark.asyncio
async def test_blob_write_failure_leaves_cid_unresolved(tmp_path):
    store = _FullDiskStore(str(tmp_path / "blobs"))
    loader = DetailLoader(_client_with_bodies(), store)

    detail = await loader.load(make_summary("m1"))

    assert 'src="cid:logo"' in detail.html
    assert detail.handles == {}
    assert detail.text == "Hello"
    store.close()


@pytest.mark.asyncio
async def test_superseded_load_returns_none_and_keeps_no_handles(store):
    loader = DetailLoader(_client_with_bodies(), store)

    stale, current = await asyncio.gather(
        loader.load(make_summary("m1")), loader.load(make_summary("m2"))
    )

    assert stale is None
    assert current.message_id == "m2"
    assert loader.message_id == "m2"
    assert store.open_count == 1
