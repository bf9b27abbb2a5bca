from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from models.db_models import ConversationDB, MessageDB
from services import history
from services.errors import ForkMismatch, MessageNotFound
from settings import settings


def fork_conversation(db: Session, source_conversation_id: int, cut_message_id: int) -> ConversationDB:
    """
    Copy a conversation up to and including `cut_message_id` into a new conversation.

    Runs as one transaction: either the new conversation and all of its copied
    messages are committed, or nothing is.
    """
    try:
        source = history.require_conversation(db, source_conversation_id)
        cut = history.get_message(db, cut_message_id)
        if cut is None:
            raise MessageNotFound(cut_message_id)
        if cut.conversation_id != source.id:
            raise ForkMismatch(cut_message_id, source.id)

        fork = ConversationDB(
            name=settings.get_default_conversation_name(),
            model_id=source.model_id,
            source_conversation_id=source.id,
        )
        db.add(fork)
        db.flush()

        prefix = (
            db.query(MessageDB)
            .filter(
                MessageDB.conversation_id == source.id,
                or_(
                    MessageDB.inserted_at < cut.inserted_at,
                    and_(MessageDB.inserted_at == cut.inserted_at, MessageDB.id <= cut.id),
                ),
            )
            .order_by(MessageDB.inserted_at, MessageDB.id)
            .all()
        )
        # One flush per copy keeps the new ids in source order; timestamps may tie
        for message in prefix:
            db.add(MessageDB(conversation_id=fork.id, who=message.who, body=message.body))
            db.flush()

        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(fork)
    return fork
