"""Tests for ConversationStore: ordering, truncation, edits and chat metadata."""

from datetime import UTC, datetime, timedelta

import pytest

from colloquy.agents import AgentInput
from colloquy.chats import ConversationStore, MessageInput, ShareUpdate, TextPart, ToolInvocationPart
from colloquy.chats import store as store_module
from colloquy.errors import NotFoundError, ValidationError
from tests.helpers import USER


class SteppingClock:
    """Replacement for the store's wall clock; can stall or step backwards."""

    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
        self.step = timedelta(seconds=1)

    def __call__(self) -> datetime:
        self.now += self.step
        return self.now


@pytest.fixture
def clock(monkeypatch):
    clock = SteppingClock()
    monkeypatch.setattr(store_module, "_utcnow", clock)
    return clock


def _msg(role: str, text: str) -> MessageInput:
    return MessageInput(role=role, parts=[TextPart(text=text)])


async def _fill(store: ConversationStore, chat_id: str, roles: list[str]):
    return [await store.append(chat_id, _msg(role, f"{role} {i + 1}")) for i, role in enumerate(roles)]


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


async def test_append_and_list_in_order(store, chat):
    saved = await _fill(store, chat.id, ["user", "assistant", "user", "assistant"])
    listed = await store.list_ordered(chat.id)

    assert [m.id for m in listed] == [m.id for m in saved]
    assert [m.role for m in listed] == ["user", "assistant", "user", "assistant"]
    assert all(a.created_at < b.created_at for a, b in zip(listed, listed[1:]))


async def test_timestamps_strictly_increase_when_clock_stalls(store, chat, clock):
    """A frozen wall clock still yields strictly increasing message timestamps."""
    clock.step = timedelta(0)
    saved = await _fill(store, chat.id, ["user", "assistant", "user"])

    stamps = [m.created_at for m in saved]
    assert stamps[1] == stamps[0] + store_module.CLOCK_STEP
    assert stamps[2] == stamps[1] + store_module.CLOCK_STEP


async def test_timestamps_strictly_increase_when_clock_goes_back(store, chat, clock):
    await _fill(store, chat.id, ["user"])
    clock.step = timedelta(minutes=-5)
    await _fill(store, chat.id, ["assistant", "user"])

    listed = await store.list_ordered(chat.id)
    assert [p.text for m in listed for p in m.parts] == ["user 1", "assistant 1", "user 2"]
    assert all(a.created_at < b.created_at for a, b in zip(listed, listed[1:]))


async def test_append_keeps_all_parts_and_metadata(store, chat):
    parts = [
        TextPart(text="Checking"),
        ToolInvocationPart(
            tool_call_id="c1", tool_name="weather", state="output-available", input={"location": "Tokyo"}, output={"temp": 18}
        ),
        TextPart(text="It is 18C."),
    ]
    saved = await store.append(chat.id, MessageInput(role="assistant", parts=parts, metadata={"model": "m"}))
    fetched = await store.get_message(chat.id, saved.id)

    assert [p.type for p in fetched.parts] == ["text", "tool-invocation", "text"]
    assert fetched.parts[1].output == {"temp": 18}
    assert fetched.metadata == {"model": "m"}


async def test_append_to_missing_chat(store):
    with pytest.raises(NotFoundError):
        await store.append("no-such-chat", _msg("user", "hi"))


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------


async def test_truncate_after_is_strict(store, chat):
    saved = await _fill(store, chat.id, ["user", "assistant", "user", "assistant"])

    deleted = await store.truncate_after(chat.id, saved[1].created_at)

    assert deleted == 2
    assert [m.id for m in await store.list_ordered(chat.id)] == [saved[0].id, saved[1].id]


async def test_edit_second_of_five_leaves_two(store, chat):
    """Editing message 2 of 5 removes 3-5; the edited message keeps its id."""
    saved = await _fill(store, chat.id, ["user", "user", "assistant", "user", "assistant"])

    result = await store.edit_user_message(chat.id, saved[1].id, "  rewritten  ")

    listed = await store.list_ordered(chat.id)
    assert result.deleted_count == 3
    assert [m.id for m in listed] == [saved[0].id, saved[1].id]
    assert listed[-1].parts == [TextPart(text="rewritten")]
    assert listed[-1].created_at == saved[1].created_at
    assert result.message.id == saved[1].id


async def test_edit_rejects_assistant_message(store, chat):
    saved = await _fill(store, chat.id, ["user", "assistant"])

    with pytest.raises(ValidationError):
        await store.edit_user_message(chat.id, saved[1].id, "nope")

    assert len(await store.list_ordered(chat.id)) == 2


async def test_edit_rejects_empty_text(store, chat):
    saved = await _fill(store, chat.id, ["user", "assistant"])

    with pytest.raises(ValidationError):
        await store.edit_user_message(chat.id, saved[0].id, "   ")

    assert len(await store.list_ordered(chat.id)) == 2


async def test_edit_unknown_message(store, chat):
    with pytest.raises(NotFoundError):
        await store.edit_user_message(chat.id, "missing", "text")


async def test_delete_from_drops_anchor(store, chat):
    """Unlike edit, delete-from removes the anchor message too."""
    saved = await _fill(store, chat.id, ["user", "assistant", "user", "assistant"])

    deleted = await store.delete_from_message(chat.id, saved[2].id)

    assert deleted == 2
    assert [m.id for m in await store.list_ordered(chat.id)] == [saved[0].id, saved[1].id]


async def test_counts_after_message(store, chat):
    saved = await _fill(store, chat.id, ["user", "assistant", "user", "assistant"])

    assert await store.count_after(chat.id, saved[0].id) == 3
    assert await store.later_user_messages(chat.id, saved[0].id) == 1
    assert await store.later_user_messages(chat.id, saved[2].id) == 0


async def test_user_message_at_or_before(store, chat):
    saved = await _fill(store, chat.id, ["user", "assistant", "user", "assistant"])

    assert (await store.user_message_at_or_before(chat.id, saved[3].id)).id == saved[2].id
    assert (await store.user_message_at_or_before(chat.id, saved[2].id)).id == saved[2].id


async def test_user_message_at_or_before_without_user(store, chat):
    saved = await _fill(store, chat.id, ["assistant"])

    with pytest.raises(ValidationError):
        await store.user_message_at_or_before(chat.id, saved[0].id)


# ---------------------------------------------------------------------------
# Chats
# ---------------------------------------------------------------------------


async def test_rename_does_not_bump_updated_at(store, chat):
    renamed = await store.update_chat(chat.id, USER, title="Trip planning")

    assert renamed.title == "Trip planning"
    assert renamed.updated_at == chat.updated_at


async def test_append_bumps_updated_at(store, chat):
    saved = await store.append(chat.id, _msg("user", "hi"))
    fetched = await store.get_chat(chat.id)

    assert fetched.updated_at == saved.created_at


async def test_rename_rejects_blank_title(store, chat):
    with pytest.raises(ValidationError):
        await store.update_chat(chat.id, USER, title="  ")


async def test_switch_agent_keeps_messages(store, chat, agents):
    other = await agents.create(AgentInput(name="Other", system_prompt="x", model="m"))
    await _fill(store, chat.id, ["user", "assistant"])

    switched = await store.update_chat(chat.id, USER, agent_id=other.id)

    assert switched.agent_id == other.id
    assert len(await store.list_ordered(chat.id)) == 2


async def test_list_chats_recency_order_and_search(store, agent, clock):
    first = await store.create_chat(USER)
    second = await store.create_chat(USER)
    await store.create_chat("someone-else")
    await store.update_chat(first.id, USER, title="Tokyo weather")
    await store.update_chat(second.id, USER, title="Recipe ideas")

    page = await store.list_chats(USER)
    assert [c.id for c in page.chats] == [second.id, first.id]
    assert page.total == 2

    # New activity moves a chat to the top; the rename above did not
    await store.append(first.id, _msg("user", "and tomorrow?"))
    page = await store.list_chats(USER)
    assert [c.id for c in page.chats] == [first.id, second.id]

    found = await store.list_chats(USER, search="tokyo")
    assert [c.id for c in found.chats] == [first.id]


async def test_list_chats_clamps_limit(store, chat):
    page = await store.list_chats(USER, limit=1000, offset=-3)
    assert page.limit == 100
    assert page.offset == 0


async def test_soft_delete_hides_chat(store, chat):
    await store.soft_delete_chat(chat.id, USER)

    assert await store.get_chat(chat.id) is None
    assert (await store.list_chats(USER)).total == 0
    with pytest.raises(NotFoundError):
        await store.append(chat.id, _msg("user", "hello?"))


async def test_chat_scoped_to_owner(store, chat):
    assert await store.get_chat(chat.id, "intruder") is None
    with pytest.raises(NotFoundError):
        await store.soft_delete_chat(chat.id, "intruder")


async def test_set_title_if_missing_only_once(store, chat):
    assert await store.set_title_if_missing(chat.id, "First") is True
    assert await store.set_title_if_missing(chat.id, "Second") is False

    fetched = await store.get_chat(chat.id)
    assert fetched.title == "First"
    assert fetched.updated_at == chat.updated_at


# ---------------------------------------------------------------------------
# Chat creation
# ---------------------------------------------------------------------------


async def test_create_chat_uses_default_agent(store, agents, agent):
    await agents.create(AgentInput(name="Second", system_prompt="x", model="m"))

    created = await store.create_chat(USER)

    assert created.agent_id == agent.id
    assert created.title is None
    assert await store.list_ordered(created.id) == []


async def test_create_chat_falls_back_to_any_agent(store, agents):
    only = await agents.create(AgentInput(name="Only", system_prompt="x", model="m"))

    created = await store.create_chat(USER)

    assert created.agent_id == only.id


async def test_create_chat_without_agents(store):
    with pytest.raises(ValidationError, match="No agents configured"):
        await store.create_chat(USER)


async def test_create_chat_with_unknown_agent(store, agent):
    with pytest.raises(NotFoundError):
        await store.create_chat(USER, "missing-agent")


# ---------------------------------------------------------------------------
# Sharing
# ---------------------------------------------------------------------------


async def test_enable_sharing_mints_link_once(store, chat):
    assert (await store.get_sharing(chat.id, USER)).sharing_uuid is None

    enabled = await store.set_sharing(chat.id, ShareUpdate(enabled=True), user_id=USER)
    assert enabled.sharing_enabled is True
    assert enabled.sharing_type == "public"
    assert enabled.sharing_uuid

    # Toggling off and on keeps the same link
    await store.set_sharing(chat.id, ShareUpdate(enabled=False), user_id=USER)
    again = await store.set_sharing(chat.id, ShareUpdate(enabled=True), user_id=USER)
    assert again.sharing_uuid == enabled.sharing_uuid

    fetched = await store.get_chat(chat.id)
    assert fetched.updated_at == chat.updated_at


async def test_regenerate_kills_old_link(store, chat):
    first = await store.set_sharing(chat.id, ShareUpdate(enabled=True), user_id=USER)

    second = await store.set_sharing(chat.id, ShareUpdate(regenerate=True, type="platform"), user_id=USER)

    assert second.sharing_uuid != first.sharing_uuid
    assert second.sharing_type == "platform"
    assert await store.get_shared(first.sharing_uuid) is None
    assert (await store.get_shared(second.sharing_uuid)).sharing_type == "platform"


async def test_sharing_scoped_to_owner(store, chat):
    with pytest.raises(NotFoundError):
        await store.set_sharing(chat.id, ShareUpdate(enabled=True), user_id="intruder")


async def test_get_shared_includes_agent_and_messages(store, chat, agent):
    saved = await _fill(store, chat.id, ["user", "assistant"])
    link = await store.set_sharing(chat.id, ShareUpdate(enabled=True), user_id=USER)

    shared = await store.get_shared(link.sharing_uuid)

    assert shared.owner_id == USER
    assert shared.agent.id == agent.id
    assert shared.agent.visibility == "public"
    assert [m.id for m in shared.messages] == [m.id for m in saved]


async def test_get_shared_hides_disabled_and_deleted(store, chat):
    link = await store.set_sharing(chat.id, ShareUpdate(enabled=True), user_id=USER)

    await store.set_sharing(chat.id, ShareUpdate(enabled=False), user_id=USER)
    assert await store.get_shared(link.sharing_uuid) is None

    await store.set_sharing(chat.id, ShareUpdate(enabled=True), user_id=USER)
    await store.soft_delete_chat(chat.id, USER)
    assert await store.get_shared(link.sharing_uuid) is None
    assert await store.get_shared("") is None


async def test_clone_copies_messages_with_fresh_ids(store, chat, agent):
    saved = await _fill(store, chat.id, ["user", "assistant", "user", "assistant"])
    await store.update_chat(chat.id, USER, title="Trip planning")
    link = await store.set_sharing(chat.id, ShareUpdate(enabled=True), user_id=USER)

    result = await store.clone_chat(link.sharing_uuid, "user-2")

    assert result.chat.user_id == "user-2"
    assert result.chat.id != chat.id
    assert result.chat.title == "Trip planning (copy)"
    assert result.chat.agent_id == agent.id
    assert result.agent_changed is False
    assert result.message_count == 4

    cloned = await store.list_ordered(result.chat.id)
    assert [p.text for m in cloned for p in m.parts] == [p.text for m in saved for p in m.parts]
    assert not {m.id for m in cloned} & {m.id for m in saved}
    assert all(a.created_at < b.created_at for a, b in zip(cloned, cloned[1:]))
    assert result.chat.updated_at == cloned[-1].created_at

    # The original is untouched and the clone is not shared
    assert len(await store.list_ordered(chat.id)) == 4
    assert (await store.get_sharing(result.chat.id, "user-2")).sharing_enabled is False


async def test_clone_untitled_chat(store, chat):
    link = await store.set_sharing(chat.id, ShareUpdate(enabled=True), user_id=USER)

    result = await store.clone_chat(link.sharing_uuid, "user-2")

    assert result.chat.title == "Cloned Chat"
    assert result.message_count == 0


async def test_clone_swaps_private_agent_for_default(store, agents, agent):
    internal = await agents.create(AgentInput(name="Internal", system_prompt="x", model="m"))
    chat = await store.create_chat(USER, internal.id)
    link = await store.set_sharing(chat.id, ShareUpdate(enabled=True), user_id=USER)

    result = await store.clone_chat(link.sharing_uuid, "user-2")

    assert result.chat.agent_id == agent.id
    assert result.agent_changed is True


async def test_clone_without_public_agent(store, agents):
    internal = await agents.create(AgentInput(name="Internal", system_prompt="x", model="m"))
    chat = await store.create_chat(USER, internal.id)
    link = await store.set_sharing(chat.id, ShareUpdate(enabled=True), user_id=USER)

    with pytest.raises(ValidationError, match="No available agent"):
        await store.clone_chat(link.sharing_uuid, "user-2")


async def test_clone_unknown_link(store, chat):
    with pytest.raises(NotFoundError):
        await store.clone_chat("no-such-link", "user-2")
