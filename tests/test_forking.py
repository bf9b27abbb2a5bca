import os
import sys
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../backend")))
from models.db_models import ConversationDB, MessageDB, Speaker
from services import history
from services.errors import ConversationNotFound, ForkMismatch, MessageNotFound
from services.forking import fork_conversation


@pytest.fixture
def five_messages(db_session, conversation):
    messages = []
    for i in range(5):
        who = Speaker.HUMAN if i % 2 == 0 else Speaker.MODEL
        messages.append(history.add_message(db_session, conversation.id, who, f"message {i + 1}"))
    db_session.commit()
    return messages


def test_fork_copies_prefix_in_order(db_session, conversation, five_messages):
    """Forking a 5 message conversation at #3 yields exactly the first 3 messages."""
    fork = fork_conversation(db_session, conversation.id, five_messages[2].id)

    assert fork.id != conversation.id
    assert fork.source_conversation_id == conversation.id
    assert fork.name == "a new conversation"
    assert fork.model_id == conversation.model_id

    copied = history.list_messages(db_session, fork.id)
    assert [(m.who, m.body) for m in copied] == [(m.who, m.body) for m in five_messages[:3]]
    assert not {m.id for m in copied} & {m.id for m in five_messages}

    # The source is untouched
    assert len(history.list_messages(db_session, conversation.id)) == 5


def test_fork_at_first_and_last_message(db_session, conversation, five_messages):
    first = fork_conversation(db_session, conversation.id, five_messages[0].id)
    last = fork_conversation(db_session, conversation.id, five_messages[-1].id)

    assert [m.body for m in history.list_messages(db_session, first.id)] == ["message 1"]
    assert [m.body for m in history.list_messages(db_session, last.id)] == [
        f"message {i + 1}" for i in range(5)
    ]


def test_fork_of_a_fork(db_session, conversation, five_messages):
    child = fork_conversation(db_session, conversation.id, five_messages[3].id)
    child_messages = history.list_messages(db_session, child.id)
    grandchild = fork_conversation(db_session, child.id, child_messages[1].id)

    assert grandchild.source_conversation_id == child.id
    assert [m.body for m in history.list_messages(db_session, grandchild.id)] == ["message 1", "message 2"]


def test_fork_respects_timestamp_ties(db_session, conversation):
    """Messages sharing a timestamp are ordered, and cut, by id."""
    stamp = history.add_message(db_session, conversation.id, Speaker.HUMAN, "a").inserted_at
    for body in ["b", "c", "d"]:
        db_session.add(MessageDB(conversation_id=conversation.id, who=Speaker.MODEL, body=body, inserted_at=stamp))
        db_session.flush()
    db_session.commit()
    messages = history.list_messages(db_session, conversation.id)
    assert [m.body for m in messages] == ["a", "b", "c", "d"]

    fork = fork_conversation(db_session, conversation.id, messages[2].id)
    assert [m.body for m in history.list_messages(db_session, fork.id)] == ["a", "b", "c"]


def test_fork_with_message_from_other_conversation(db_session, conversation, five_messages):
    other = history.create_conversation(db_session, "Other")
    before = db_session.query(ConversationDB).count()

    with pytest.raises(ForkMismatch):
        fork_conversation(db_session, other.id, five_messages[0].id)

    assert db_session.query(ConversationDB).count() == before


def test_fork_of_unknown_conversation(db_session, conversation, five_messages):
    before = db_session.query(ConversationDB).count()
    with pytest.raises(ConversationNotFound):
        fork_conversation(db_session, 4242, five_messages[0].id)
    assert db_session.query(ConversationDB).count() == before

def test_fork_with_unknown_message(db_session, conversation):
    before = db_session.query(ConversationDB).count()
    with pytest.raises(MessageNotFound):
        fork_conversation(db_session, conversation.id, 31337)
    assert db_session.query(ConversationDB).count() == before


def test_failed_copy_rolls_back_everything(db_session, conversation, five_messages, monkeypatch):
    before = db_session.query(ConversationDB).count()
    real_flush = db_session.flush
    calls = {"n": 0}

    def flaky_flush(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 3:
            raise RuntimeError("disk full")
        return real_flush(*args, **kwargs)

    monkeypatch.setattr(db_session, "flush", flaky_flush)
    with pytest.raises(RuntimeError):
        fork_conversation(db_session, conversation.id, five_messages[4].id)
    monkeypatch.undo()

    assert db_session.query(ConversationDB).count() == before
    assert db_session.query(MessageDB).count() == 5
