import asyncio

import pytest

from support_widget.config import SyncConfig
from support_widget.core.errors import (
    ClaimConflictError,
    ConversationClosedError,
    NotFoundError,
    UploadError,
    ValidationError,
)
from support_widget.core.types import ChangeType, ConversationStatus, MessageKind, SenderType
from support_widget.gateway.base import ChangeEvent
from support_widget.storage.models import Message


@pytest.mark.asyncio
async def test_acme_scenario_with_echo_only_agent(make_browser, staff_user, login_agent, service):
    await staff_user("ana@example.com", "Ana")
    client = make_browser("client")
    agent = make_browser("agent", sync_config=SyncConfig(optimistic_agent_messages=False))
    await client.sync.start()
    await agent.sync.start()
    await login_agent(agent, "ana@example.com")
    assert agent.sync.is_staff

    created = await client.sync.create_conversation("acme")
    assert created.ok
    cid = created.value
    await client.sync.settle()
    await agent.sync.settle()

    conv = agent.sync.get_conversation(cid)
    assert conv.status == ConversationStatus.OPEN
    assert conv.claimed_by is None
    assert client.tokens.active_conversation == cid

    claimed = await agent.sync.claim_conversation(cid)
    assert claimed.ok
    assert claimed.value.status == ConversationStatus.CLAIMED
    assert claimed.value.claimed_by == "Ana"

    sent = await agent.sync.add_message(cid, "hello", SenderType.AGENT)
    assert sent.ok
    # Echo-only: nothing local until the realtime event lands.
    assert agent.sync.get_messages(cid) == []
    await agent.sync.settle()
    assert [m.text for m in agent.sync.get_messages(cid)] == ["hello"]

    await client.sync.settle()
    assert [m.text for m in client.sync.get_messages(cid)] == ["hello"]

    closed = await agent.sync.close_conversation(cid)
    assert closed.ok
    await client.sync.settle()
    assert client.sync.get_conversation(cid).is_closed

    rejected = await client.sync.add_message(cid, "are you there?", SenderType.CLIENT)
    assert isinstance(rejected.error, ConversationClosedError)
    rows = await service.select("messages", eq={"conversation_id": cid})
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_optimistic_agent_message_is_not_duplicated_by_echo(make_browser, staff_user, login_agent):
    await staff_user("ana@example.com", "Ana")
    client = make_browser("client")
    agent = make_browser("agent")
    await client.sync.start()
    await agent.sync.start()
    await login_agent(agent, "ana@example.com")
    cid = (await client.sync.create_conversation("acme")).unwrap()
    await agent.sync.settle()
    await agent.sync.claim_conversation(cid)

    sent = await agent.sync.add_message(cid, "hi", SenderType.AGENT)

    assert [m.id for m in agent.sync.get_messages(cid)] == [sent.value.id]
    await agent.sync.settle()
    assert [m.id for m in agent.sync.get_messages(cid)] == [sent.value.id]


@pytest.mark.asyncio
async def test_client_message_is_visible_immediately_and_once(make_browser):
    client = make_browser("client")
    await client.sync.start()
    cid = (await client.sync.create_conversation("acme")).unwrap()
    await client.sync.settle()

    sent = await client.sync.add_message(cid, "help", SenderType.CLIENT)

    assert sent.ok
    assert [m.text for m in client.sync.get_messages(cid)] == ["help"]
    await client.sync.settle()
    assert len(client.sync.get_messages(cid)) == 1


@pytest.mark.asyncio
async def test_create_conversation_validates_and_links_member(make_browser, service):
    await service.insert("communities", {"id": "acme", "name": "Acme"})
    await service.insert("members", {"id": "m1", "community_id": "acme", "email": "r@acme.org"})
    client = make_browser("client")
    await client.sync.start()

    empty = await client.sync.create_conversation("   ")
    assert isinstance(empty.error, ValidationError)

    cid = (await client.sync.create_conversation(" acme ", member_email="R@acme.org")).unwrap()
    row = await service.select_one("conversations", id=cid)
    assert row["member_id"] == "m1"
    assert row["community_id"] == "acme"
    assert row["client_token"] == client.tokens.get_or_create_client_token()


@pytest.mark.asyncio
async def test_two_tabs_converge(make_browser, tmp_path):
    shared = tmp_path / "same-profile.json"
    tab1 = make_browser("tab1", storage=shared)
    await tab1.sync.start()
    cid = (await tab1.sync.create_conversation("acme")).unwrap()

    tab2 = make_browser("tab2", storage=shared)
    assert tab2.tokens.active_conversation == cid
    await tab2.sync.start()

    await asyncio.gather(
        tab1.sync.add_message(cid, "from tab 1", SenderType.CLIENT),
        tab2.sync.add_message(cid, "from tab 2", SenderType.CLIENT),
    )
    await tab1.sync.settle()
    await tab2.sync.settle()

    ids1 = [m.id for m in tab1.sync.get_messages(cid)]
    ids2 = [m.id for m in tab2.sync.get_messages(cid)]
    assert ids1 == ids2
    assert len(ids1) == 2


@pytest.mark.asyncio
async def test_late_fetch_for_previous_conversation_is_dropped(make_browser, service):
    client = make_browser("client")
    token = client.tokens.get_or_create_client_token()
    for day, cid in enumerate(("conv-a", "conv-b"), start=1):
        await client.contexts.public.insert("conversations", {
            "id": cid,
            "community_id": "acme",
            "client_token": token,
            "created_at": f"2024-01-0{day}T00:00:00+00:00",
        })
        await client.contexts.public.insert("messages", Message(
            id=f"{cid}-m1", conversation_id=cid, sender_type="client", text=cid, client_token=token
        ).to_row())

    public = client.contexts.public
    original_select = public.select
    entered = asyncio.Event()
    release = asyncio.Event()

    async def gated_select(table, **kwargs):
        if table == "messages" and (kwargs.get("eq") or {}).get("conversation_id") == "conv-a":
            entered.set()
            await release.wait()
        return await original_select(table, **kwargs)

    public.select = gated_select

    client.tokens.set_active_conversation("conv-a")
    slow = asyncio.create_task(client.sync.bootstrap())
    await entered.wait()

    client.tokens.set_active_conversation("conv-b")
    await client.sync.bootstrap()
    release.set()
    await slow

    assert client.sync.get_conversation("conv-a") is None
    assert client.sync.get_messages("conv-a") == []
    assert [m.text for m in client.sync.get_messages("conv-b")] == ["conv-b"]


@pytest.mark.asyncio
async def test_switching_conversation_rebootstraps_and_clears_old_state(make_browser):
    client = make_browser("client")
    await client.sync.start()
    first = (await client.sync.create_conversation("acme")).unwrap()
    await client.sync.add_message(first, "one", SenderType.CLIENT)
    second = (await client.sync.create_conversation("acme")).unwrap()
    await client.sync.settle()

    assert client.sync.get_conversation(first) is None
    assert client.sync.get_messages(first) == []
    assert client.sync.get_conversation(second) is not None

    client.tokens.set_active_conversation(None)
    await client.sync.settle()
    assert len(client.sync.conversations) == 0


@pytest.mark.asyncio
async def test_image_upload_failure_leaves_no_row(make_browser, service):
    client = make_browser("client")
    await client.sync.start()
    cid = (await client.sync.create_conversation("acme")).unwrap()

    failed = await client.sync.send_image_message(cid, b"", "photo.png", SenderType.CLIENT)

    assert isinstance(failed.error, UploadError)
    assert client.sync.get_messages(cid) == []
    assert await service.select("messages", eq={"conversation_id": cid}) == []


@pytest.mark.asyncio
async def test_image_message_carries_url_and_path(make_browser, service):
    client = make_browser("client")
    await client.sync.start()
    cid = (await client.sync.create_conversation("acme")).unwrap()

    sent = await client.sync.send_image_message(cid, b"\x89PNG", "my photo.png", "client", "image/png")

    message = sent.unwrap()
    assert message.kind == MessageKind.IMAGE
    assert message.text == ""
    assert message.image_path.startswith(f"conversations/{cid}/client/")
    assert message.image_path.endswith("_my_photo.png")
    assert message.image_url.endswith(message.image_path)
    rows = await service.select("messages", eq={"conversation_id": cid})
    assert rows[0]["image_path"] == message.image_path


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(make_browser, staff_user, login_agent, service):
    await staff_user("ana@example.com", "Ana")
    await staff_user("bruno@example.com", "Bruno")
    client = make_browser("client")
    ana = make_browser("ana")
    bruno = make_browser("bruno")
    for browser in (client, ana, bruno):
        await browser.sync.start()
    await login_agent(ana, "ana@example.com")
    await login_agent(bruno, "bruno@example.com")
    cid = (await client.sync.create_conversation("acme")).unwrap()
    await ana.sync.settle()
    await bruno.sync.settle()

    results = await asyncio.gather(
        ana.sync.claim_conversation(cid), bruno.sync.claim_conversation(cid)
    )

    winners = [r for r in results if r.ok]
    losers = [r for r in results if not r.ok]
    assert len(winners) == 1
    assert isinstance(losers[0].error, ClaimConflictError)
    row = await service.select_one("conversations", id=cid)
    assert row["claimed_by"] == winners[0].value.claimed_by

    await ana.sync.settle()
    await bruno.sync.settle()
    assert ana.sync.get_conversation(cid).claimed_by == row["claimed_by"]
    assert bruno.sync.get_conversation(cid).claimed_by == row["claimed_by"]


@pytest.mark.asyncio
async def test_close_is_idempotent_and_unknown_id_fails(make_browser, staff_user, login_agent):
    await staff_user("ana@example.com", "Ana")
    client = make_browser("client")
    agent = make_browser("agent")
    await client.sync.start()
    await agent.sync.start()
    await login_agent(agent, "ana@example.com")
    cid = (await client.sync.create_conversation("acme")).unwrap()

    assert (await agent.sync.close_conversation(cid)).ok
    assert (await agent.sync.close_conversation(cid)).ok
    missing = await agent.sync.close_conversation("nope")
    assert isinstance(missing.error, NotFoundError)

    late_claim = await agent.sync.claim_conversation(cid)
    assert isinstance(late_claim.error, ClaimConflictError)


@pytest.mark.asyncio
async def test_mark_seen_both_sides(make_browser, staff_user, login_agent):
    await staff_user("ana@example.com", "Ana")
    client = make_browser("client")
    agent = make_browser("agent")
    await client.sync.start()
    await agent.sync.start()
    await login_agent(agent, "ana@example.com")
    cid = (await client.sync.create_conversation("acme")).unwrap()
    await client.sync.settle()

    assert (await client.sync.mark_seen("client", cid)).value is True
    assert (await client.sync.mark_seen("client", "unknown")).value is False
    assert (await agent.sync.mark_seen("agent", cid)).value is True

    await client.sync.settle()
    conv = client.sync.get_conversation(cid)
    assert conv.client_last_seen_at is not None
    assert conv.agent_last_seen_at is not None


@pytest.mark.asyncio
async def test_failed_mutation_is_reported_to_error_log(make_browser, service):
    client = make_browser("client")
    await client.sync.start()

    result = await client.sync.close_conversation("whatever")

    assert not result.ok
    rows = await service.select("error_logs")
    assert rows[-1]["function_name"] == "close_conversation"
    assert rows[-1]["client_token"] == client.tokens.get_or_create_client_token()


@pytest.mark.asyncio
async def test_empty_text_is_rejected_without_backend_call(make_browser, service):
    client = make_browser("client")
    await client.sync.start()
    cid = (await client.sync.create_conversation("acme")).unwrap()

    result = await client.sync.add_message(cid, "   ", SenderType.CLIENT)

    assert isinstance(result.error, ValidationError)
    assert await service.select("messages") == []


@pytest.mark.asyncio
async def test_stale_conversation_row_does_not_reopen_locally(make_browser, staff_user, login_agent):
    await staff_user("ana@example.com", "Ana")
    client = make_browser("client")
    agent = make_browser("agent")
    await client.sync.start()
    await agent.sync.start()
    await login_agent(agent, "ana@example.com")
    cid = (await client.sync.create_conversation("acme")).unwrap()
    await agent.sync.settle()
    claimed = (await agent.sync.claim_conversation(cid)).unwrap()
    await agent.sync.close_conversation(cid)

    # A claimed image delivered after the close, e.g. from a slow fetch.
    agent.sync._apply(ChangeEvent(table="conversations", type=ChangeType.UPDATE, new=claimed.to_row()))

    assert agent.sync.get_conversation(cid).status == ConversationStatus.CLOSED
    await agent.sync.settle()
    assert agent.sync.get_conversation(cid).status == ConversationStatus.CLOSED
