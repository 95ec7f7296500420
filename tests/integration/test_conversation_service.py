import pytest
import pytest_asyncio
from datetime import timedelta
from sqlalchemy import func, select, update

from errors import ConversationConflict, NoActiveConversation
from models import Conversation, Message, Sender, utcnow
from schemas import MessageRecord


def _inbound(message_id, text="hello"):
    return MessageRecord(id=message_id, text=text, sender=Sender.CUSTOMER, timestamp=utcnow())


def _agent(message_id, text="on it", agent_id="agent-1"):
    return MessageRecord(id=message_id, text=text, sender=Sender.AGENT, agent_id=agent_id, timestamp=utcnow())


@pytest_asyncio.fixture
async def customer(customers):
    customer, _ = await customers.resolve("385911234567", "Ana")
    return customer


async def _message_count(db_session, conversation_id):
    return await db_session.scalar(
        select(func.count()).select_from(Message).where(Message.conversation_id == conversation_id)
    )


@pytest.mark.asyncio
async def test_create_new_opens_unread_conversation(conversations, customer, db_session):
    conversation = await conversations.create_new(customer.id, _inbound("wamid.1"), "hello")

    assert conversation.status == "new"
    assert conversation.unread_count == 1
    assert conversation.last_message_preview == "hello"
    assert conversation.agent_id is None
    assert await _message_count(db_session, conversation.id) == 1


@pytest.mark.asyncio
async def test_find_active_skips_resolved(conversations, customer):
    with pytest.raises(NoActiveConversation):
        await conversations.find_active(customer.id)

    conversation = await conversations.create_new(customer.id, _inbound("wamid.1"), "hello")
    assert (await conversations.find_active(customer.id)).id == conversation.id

    await conversations.resolve(conversation.id)
    with pytest.raises(NoActiveConversation):
        await conversations.find_active(customer.id)


@pytest.mark.asyncio
async def test_append_to_claimed_resets_triage_state(conversations, customer, db_session):
    created = await conversations.create_new(customer.id, _inbound("wamid.1"), "hello")
    claimed = await conversations.claim(created.id, "agent-7")
    before = claimed.updated_at

    updated = await conversations.append_inbound(claimed, _inbound("wamid.2", "still there?"), "still there?")

    assert updated.status == "new"
    assert updated.agent_id == "agent-7"
    assert updated.unread_count == 2
    assert updated.last_message_preview == "still there?"
    assert updated.updated_at >= before
    assert await _message_count(db_session, created.id) == 2


@pytest.mark.asyncio
async def test_append_to_resolved_reopens_as_new(conversations, customer):
    created = await conversations.create_new(customer.id, _inbound("wamid.1"), "hello")
    resolved = await conversations.resolve(created.id)
    before = resolved.updated_at

    updated = await conversations.append_inbound(resolved, _inbound("wamid.2"), "again")

    assert updated.status == "new"
    assert updated.updated_at >= before


@pytest.mark.asyncio
async def test_updated_at_never_moves_backwards(conversations, customer, db_session):
    created = await conversations.create_new(customer.id, _inbound("wamid.1"), "hello")
    future = utcnow() + timedelta(hours=1)
    await db_session.execute(update(Conversation).where(Conversation.id == created.id).values(updated_at=future))
    await db_session.commit()

    updated = await conversations.append_inbound(created, _inbound("wamid.2"), "later")

    assert updated.updated_at == future


@pytest.mark.asyncio
async def test_duplicate_message_id_is_not_appended(conversations, customer, db_session):
    created = await conversations.create_new(customer.id, _inbound("wamid.1"), "hello")

    result = await conversations.append_inbound(created, _inbound("wamid.1"), "hello")

    assert result is None
    assert await _message_count(db_session, created.id) == 1
    refreshed = await conversations.get(created.id)
    assert refreshed.unread_count == 1


@pytest.mark.asyncio
async def test_second_open_conversation_is_a_conflict(conversations, customer):
    await conversations.create_new(customer.id, _inbound("wamid.1"), "hello")

    with pytest.raises(ConversationConflict):
        await conversations.create_new(customer.id, _inbound("wamid.2"), "hello again")


@pytest.mark.asyncio
async def test_new_conversation_after_resolve(conversations, customer):
    first = await conversations.create_new(customer.id, _inbound("wamid.1"), "hello")
    await conversations.resolve(first.id)

    second = await conversations.create_new(customer.id, _inbound("wamid.2"), "new issue")

    assert second.id != first.id
    assert (await conversations.find_active(customer.id)).id == second.id


@pytest.mark.asyncio
async def test_append_outbound_leaves_unread_and_status(conversations, customer):
    created = await conversations.create_new(customer.id, _inbound("wamid.1"), "hello")

    updated = await conversations.append_outbound(created, _agent("msg-1", "Hi Ana"), "Hi Ana")

    assert updated.unread_count == 1
    assert updated.status == "new"
    assert updated.last_message_preview == "Hi Ana"
    messages = await conversations.list_messages(created.id)
    assert [m.id for m in messages] == ["wamid.1", "msg-1"]
    assert messages[1].sender == Sender.AGENT
    assert messages[1].agent_id == "agent-1"


@pytest.mark.asyncio
async def test_lifecycle_operations(conversations, customer):
    created = await conversations.create_new(customer.id, _inbound("wamid.1"), "hello")

    read = await conversations.mark_read(created.id)
    assert read.unread_count == 0

    noted = await conversations.update_notes(created.id, "VIP customer")
    assert noted.internal_notes == "VIP customer"

    resolved = await conversations.resolve(created.id)
    assert resolved.status == "resolved"

    reopened = await conversations.reopen(created.id)
    assert reopened.status == "new"


@pytest.mark.asyncio
async def test_reopen_with_another_open_conversation_conflicts(conversations, customer):
    first = await conversations.create_new(customer.id, _inbound("wamid.1"), "hello")
    await conversations.resolve(first.id)
    await conversations.create_new(customer.id, _inbound("wamid.2"), "new issue")

    with pytest.raises(ConversationConflict):
        await conversations.reopen(first.id)


@pytest.mark.asyncio
async def test_unknown_conversation_update_returns_none(conversations):
    assert await conversations.resolve("does-not-exist") is None


@pytest.mark.asyncio
async def test_views_filter_by_status_and_owner(conversations, customers):
    ana, _ = await customers.resolve("385911111111", "Ana")
    ivo, _ = await customers.resolve("385912222222", "Ivo")
    eva, _ = await customers.resolve("385913333333", "Eva")

    fresh = await conversations.create_new(ana.id, _inbound("wamid.a"), "a")
    mine = await conversations.create_new(ivo.id, _inbound("wamid.b"), "b")
    done = await conversations.create_new(eva.id, _inbound("wamid.c"), "c")
    await conversations.claim(mine.id, "agent-1")
    await conversations.resolve(done.id)

    assert [c.id for c in await conversations.list_for_view("new")] == [fresh.id]
    assert [c.id for c in await conversations.list_for_view("mine", "agent-1")] == [mine.id]
    assert await conversations.list_for_view("mine", "agent-2") == []
    assert [c.id for c in await conversations.list_for_view("resolved")] == [done.id]

    everything = await conversations.list_for_view("all")
    assert {c.id for c in everything} == {fresh.id, mine.id, done.id}
    assert everything[0].updated_at >= everything[-1].updated_at

    with pytest.raises(ValueError):
        await conversations.list_for_view("archived")
