import pytest

from support_widget.config import PresenceConfig
from support_widget.services.presence import PresenceService


@pytest.mark.asyncio
async def test_watch_and_unwatch_jobs(make_browser):
    browser = make_browser("client")
    await browser.sync.start()
    cid = (await browser.sync.create_conversation("acme")).unwrap()
    presence = PresenceService(PresenceConfig(seen_interval_seconds=60), browser.sync)

    await presence.start()
    assert await presence.health_check()
    job_id = presence.watch("client", cid)
    again = presence.watch("client", cid)

    assert job_id == again == f"seen:client:{cid}"
    assert [j["id"] for j in presence.list_jobs()] == [job_id]
    assert presence.unwatch(job_id) is True
    assert presence.unwatch(job_id) is False

    await presence.stop()
    assert not await presence.health_check()


@pytest.mark.asyncio
async def test_stop_is_reflected_before_returning(make_browser):
    browser = make_browser("client")
    presence = PresenceService(PresenceConfig(), browser.sync)
    assert not await presence.health_check()

    await presence.start()
    await presence.stop()

    assert not await presence.health_check()


@pytest.mark.asyncio
async def test_ping_marks_client_seen(make_browser, service):
    browser = make_browser("client")
    await browser.sync.start()
    cid = (await browser.sync.create_conversation("acme")).unwrap()
    presence = PresenceService(PresenceConfig(), browser.sync)

    assert await presence.ping("client", cid) is True
    assert await presence.ping("client", "missing") is False
    row = await service.select_one("conversations", id=cid)
    assert row["client_last_seen_at"] is not None
