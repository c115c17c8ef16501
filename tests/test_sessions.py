"""Tests for the session store."""

import asyncio

import pytest

from refiner_client.sessions import DEFAULT_SESSION_TITLE


@pytest.mark.asyncio
async def test_load_with_zero_sessions_creates_exactly_one(store, fake_api):
    sessions = store.sessions
    await sessions.load()

    assert fake_api.count("POST", "/api/chat/sessions") == 1
    assert len(sessions.sessions) == 1
    assert sessions.current_session is not None
    assert sessions.current_session.title == DEFAULT_SESSION_TITLE
    assert sessions.messages == []


@pytest.mark.asyncio
async def test_auto_create_latch_survives_failed_creation(store, fake_api):
    fake_api.fail("POST", "/api/chat/sessions")
    sessions = store.sessions
    await sessions.load()
    await sessions._auto_select()

    assert fake_api.count("POST", "/api/chat/sessions") == 1
    assert sessions.current_session is None
    assert sessions.error == "boom"


@pytest.mark.asyncio
async def test_load_selects_first_listed_session(store, fake_api):
    fake_api.add_session("old", updated_at="2025-01-10T10:00:00Z")
    fake_api.add_session("new", updated_at="2025-01-15T10:00:00Z")
    fake_api.add_session_message("old", "m-old", "hello")
    sessions = store.sessions

    await sessions.load()

    assert sessions.current_session.id == "old"
    assert [m.id for m in sessions.messages] == ["m-old"]
    assert fake_api.count("POST", "/api/chat/sessions") == 0


@pytest.mark.asyncio
async def test_list_sessions_filters_foreign_sessions(store, fake_api):
    fake_api.add_session("mine", user_id="u1")
    fake_api.add_session("theirs", user_id="u2")

    found = await store.sessions.list_sessions()

    assert [s.id for s in found] == ["mine"]


@pytest.mark.asyncio
async def test_list_sessions_failure_clears_list(store, fake_api):
    fake_api.add_session("s1")
    await store.sessions.list_sessions()
    fake_api.fail("GET", "/api/chat/sessions")

    found = await store.sessions.list_sessions()

    assert found == []
    assert store.sessions.error == "boom"
    assert store.sessions.loading is False


@pytest.mark.asyncio
async def test_list_sessions_replaces_instead_of_merging(store, fake_api):
    fake_api.add_session("s1")
    await store.sessions.list_sessions()
    await store.sessions.list_sessions()

    assert [s.id for s in store.sessions.sessions] == ["s1"]


@pytest.mark.asyncio
async def test_create_session_without_user_returns_none(store, auth, fake_api):
    auth.sign_out()

    assert await store.sessions.create_session("x") is None
    assert fake_api.calls == []


@pytest.mark.asyncio
async def test_create_session_prepends_and_selects(store, fake_api):
    fake_api.add_session("s1")
    await store.sessions.list_sessions()

    new_id = await store.sessions.create_session("Draft")

    assert store.sessions.sessions[0].id == new_id
    assert store.sessions.current_session.id == new_id
    assert store.sessions.current_session.title == "Draft"


@pytest.mark.asyncio
async def test_switch_session_replaces_messages(store, fake_api):
    fake_api.add_session("a")
    fake_api.add_session("b")
    fake_api.add_session_message("a", "a1", "from a")
    fake_api.add_session_message("b", "b1", "from b")
    await store.sessions.list_sessions()

    await store.sessions.switch_session("a")
    await store.sessions.switch_session("b")

    assert store.sessions.current_session.id == "b"
    assert [m.id for m in store.sessions.messages] == ["b1"]


@pytest.mark.asyncio
async def test_switch_to_unknown_session_is_noop(store, fake_api):
    fake_api.add_session("a")
    await store.sessions.list_sessions()
    await store.sessions.switch_session("a")
    calls = len(fake_api.calls)

    await store.sessions.switch_session("missing")

    assert store.sessions.current_session.id == "a"
    assert len(fake_api.calls) == calls


@pytest.mark.asyncio
async def test_stale_switch_response_is_discarded(store, fake_api):
    fake_api.add_session("a")
    fake_api.add_session("b")
    fake_api.add_session_message("a", "a1", "from a")
    fake_api.add_session_message("b", "b1", "from b")
    await store.sessions.list_sessions()

    await asyncio.gather(store.sessions.switch_session("a"), store.sessions.switch_session("b"))

    assert store.sessions.current_session.id == "b"
    assert [m.id for m in store.sessions.messages] == ["b1"]


@pytest.mark.asyncio
async def test_deleting_only_current_session_creates_replacement(store, fake_api):
    sessions = store.sessions
    await sessions.load()
    only = sessions.current_session.id

    assert await sessions.delete_session(only) is True

    assert fake_api.count("POST", "/api/chat/sessions") == 2
    assert len(sessions.sessions) == 1
    assert sessions.current_session is not None
    assert sessions.current_session.id != only


@pytest.mark.asyncio
async def test_deleting_current_session_switches_to_first_remaining(store, fake_api):
    fake_api.add_session("a")
    fake_api.add_session("b")
    await store.sessions.list_sessions()
    await store.sessions.switch_session("a")

    await store.sessions.delete_session("a")

    assert store.sessions.current_session.id == "b"
    assert [s.id for s in store.sessions.sessions] == ["b"]


@pytest.mark.asyncio
async def test_delete_failure_keeps_session(store, fake_api):
    fake_api.add_session("a")
    await store.sessions.list_sessions()
    fake_api.fail("DELETE", "/api/chat/sessions/a", 404)

    assert await store.sessions.delete_session("a") is False
    assert [s.id for s in store.sessions.sessions] == ["a"]
    assert store.sessions.error == "boom"


@pytest.mark.asyncio
async def test_rename_updates_list_and_current(store, fake_api):
    fake_api.add_session("a", title="Old")
    await store.sessions.list_sessions()
    await store.sessions.switch_session("a")

    assert await store.sessions.rename_session("a", "New") is True

    assert store.sessions.sessions[0].title == "New"
    assert store.sessions.current_session.title == "New"
    assert fake_api.sessions["a"]["title"] == "New"


@pytest.mark.asyncio
async def test_rename_is_rolled_back_on_failure(store, fake_api):
    fake_api.add_session("a", title="Old")
    await store.sessions.list_sessions()
    await store.sessions.switch_session("a")
    fake_api.fail("PATCH", "/api/chat/sessions/a")
    titles = []
    store.sessions.subscribe(lambda s: titles.append(s.current_session.title))

    assert await store.sessions.rename_session("a", "New") is False

    assert "New" in titles
    assert store.sessions.sessions[0].title == "Old"
    assert store.sessions.current_session.title == "Old"
    assert store.sessions.error == "boom"


@pytest.mark.asyncio
async def test_clear_messages_zeroes_count(store, fake_api):
    fake_api.add_session("a", message_count=2)
    fake_api.add_session_message("a", "a1", "one")
    fake_api.add_session_message("a", "a2", "two")
    await store.sessions.list_sessions()
    await store.sessions.switch_session("a")

    assert await store.sessions.clear_messages("a") is True

    assert store.sessions.messages == []
    assert store.sessions.sessions[0].message_count == 0


@pytest.mark.asyncio
async def test_send_without_reply_increments_count_by_one(store, fake_api):
    fake_api.add_session("a", message_count=3)
    await store.sessions.list_sessions()
    await store.sessions.switch_session("a")

    message = await store.sessions.send_message("hello")

    assert message is not None
    assert not message.is_temp
    assert store.sessions.sessions[0].message_count == 4
    assert [m.content for m in store.sessions.messages] == ["hello"]
    assert store.sessions.messages[0].id == message.id


@pytest.mark.asyncio
async def test_send_with_reply_increments_count_by_two(store, fake_api):
    fake_api.add_session("a", message_count=3)
    fake_api.assistant_reply = "hi there"
    await store.sessions.list_sessions()
    await store.sessions.switch_session("a")

    await store.sessions.send_message("hello")

    assert store.sessions.sessions[0].message_count == 5
    assert [m.role for m in store.sessions.messages] == ["user", "assistant"]
    assert store.sessions.messages[1].content == "hi there"


@pytest.mark.asyncio
async def test_send_shows_provisional_message_first(store, fake_api):
    fake_api.add_session("a")
    await store.sessions.list_sessions()
    await store.sessions.switch_session("a")
    snapshots = []
    store.sessions.subscribe(lambda s: snapshots.append([m.id for m in s.messages]))

    await store.sessions.send_message("hello")

    assert any(ids and ids[0].startswith("temp-") for ids in snapshots)
    assert not any(m.is_temp for m in store.sessions.messages)


@pytest.mark.asyncio
async def test_send_failure_removes_temp_message(store, fake_api):
    fake_api.add_session("a", message_count=3)
    await store.sessions.list_sessions()
    await store.sessions.switch_session("a")
    fake_api.fail("POST", "/api/chat/sessions/a/messages")

    assert await store.sessions.send_message("hello") is None

    assert store.sessions.messages == []
    assert store.sessions.sessions[0].message_count == 3
    assert store.sessions.error == "boom"


@pytest.mark.asyncio
async def test_send_resorts_sessions_by_updated_at(store, fake_api):
    fake_api.add_session("recent", updated_at="2025-01-15T10:00:00Z")
    fake_api.add_session("stale", updated_at="2025-01-01T10:00:00Z")
    await store.sessions.list_sessions()
    await store.sessions.switch_session("stale")

    await store.sessions.send_message("bump")

    assert [s.id for s in store.sessions.sessions] == ["stale", "recent"]


@pytest.mark.asyncio
async def test_concurrent_sends_leave_unique_permanent_ids(store, fake_api):
    fake_api.add_session("a")
    await store.sessions.list_sessions()
    await store.sessions.switch_session("a")

    await asyncio.gather(*(store.sessions.send_message(f"msg {i}") for i in range(5)))

    ids = [m.id for m in store.sessions.messages]
    assert len(ids) == 5
    assert len(set(ids)) == 5
    assert not any(i.startswith("temp-") for i in ids)


@pytest.mark.asyncio
async def test_send_without_current_session_is_noop(store, fake_api):
    assert await store.sessions.send_message("hello") is None
    assert fake_api.calls == []


@pytest.mark.asyncio
async def test_participants_are_not_fetched_for_private_sessions(store, fake_api):
    fake_api.add_session("a")
    await store.sessions.list_sessions()

    assert await store.sessions.list_participants("a") == []
    assert fake_api.count("GET", "/api/chat/sessions/a/participants") == 0


@pytest.mark.asyncio
async def test_add_participant_enables_sharing_first(store, fake_api):
    fake_api.add_session("a")
    await store.sessions.list_sessions()

    assert await store.sessions.add_participant("a", "friend@example.com") is True

    assert store.sessions.sessions[0].is_shared is True
    assert fake_api.calls[-2:] == [
        ("POST", "/api/chat/sessions/a/share"),
        ("POST", "/api/chat/sessions/a/participants"),
    ]
    participants = await store.sessions.list_participants("a")
    assert [p.email for p in participants] == ["friend@example.com"]


@pytest.mark.asyncio
async def test_add_participant_rejects_bad_email(store, fake_api):
    fake_api.add_session("a")
    await store.sessions.list_sessions()
    calls = len(fake_api.calls)

    assert await store.sessions.add_participant("a", "not-an-email") is False
    assert store.sessions.error == "Please enter a valid email address"
    assert len(fake_api.calls) == calls


@pytest.mark.asyncio
async def test_unshare_clears_shared_flag(store, fake_api):
    fake_api.add_session("a", is_shared=True)
    await store.sessions.list_sessions()

    assert await store.sessions.unshare_session("a") is True
    assert store.sessions.sessions[0].is_shared is False


@pytest.mark.asyncio
async def test_refresh_messages_replaces_current_list(store, fake_api):
    fake_api.add_session("a")
    await store.sessions.list_sessions()
    await store.sessions.switch_session("a")
    fake_api.add_session_message("a", "late", "arrived elsewhere")

    await store.sessions.refresh_messages()

    assert [m.id for m in store.sessions.messages] == ["late"]
