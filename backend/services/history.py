from sqlalchemy import func, update
from sqlalchemy.orm import Session
from models.db_models import ConversationDB, MessageDB, ModelDB, Speaker, utcnow
from services.errors import ConversationNotFound, ModelNotFound
from settings import settings
from typing import Iterable, List, Optional


def get_conversations(db: Session, limit: int = 50, offset: int = 0) -> List[dict]:
    """Conversations newest first, with their model name, size and last message time."""
    last_messages = (
        db.query(
            MessageDB.conversation_id.label("conversation_id"),
            func.max(MessageDB.inserted_at).label("last_message_inserted_at"),
            func.count(MessageDB.id).label("message_count"),
        )
        .group_by(MessageDB.conversation_id)
        .subquery()
    )
    rows = (
        db.query(
            ConversationDB,
            ModelDB.name,
            last_messages.c.last_message_inserted_at,
            last_messages.c.message_count,
        )
        .outerjoin(ModelDB, ConversationDB.model_id == ModelDB.id)
        .outerjoin(last_messages, last_messages.c.conversation_id == ConversationDB.id)
        .order_by(ConversationDB.inserted_at.desc(), ConversationDB.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [
        {
            "id": conv.id,
            "name": conv.name,
            "model": model_name,
            "source_conversation_id": conv.source_conversation_id,
            "message_count": message_count or 0,
            "inserted_at": conv.inserted_at,
            "last_message_inserted_at": last_at,
        }
        for conv, model_name, last_at, message_count in rows
    ]


def get_conversation(db: Session, conv_id: int) -> Optional[ConversationDB]:
    return db.query(ConversationDB).filter(ConversationDB.id == conv_id).first()


def require_conversation(db: Session, conv_id: int) -> ConversationDB:
    db_conv = get_conversation(db, conv_id)
    if db_conv is None:
        raise ConversationNotFound(conv_id)
    return db_conv


def get_default_model(db: Session) -> Optional[ModelDB]:
    return db.query(ModelDB).order_by(ModelDB.id).first()


def create_conversation(db: Session, name: Optional[str] = None) -> ConversationDB:
    default_model = get_default_model(db)
    db_conv = ConversationDB(
        name=name or settings.get_default_conversation_name(),
        model_id=default_model.id if default_model else None,
    )
    db.add(db_conv)
    db.commit()
    db.refresh(db_conv)
    return db_conv


def update_conversation(
    db: Session, conv_id: int, name: Optional[str] = None, model_name: Optional[str] = None
) -> ConversationDB:
    """Rename a conversation and/or point it at another known model, in one commit."""
    db_conv = require_conversation(db, conv_id)
    if model_name is not None:
        db_model = db.query(ModelDB).filter(ModelDB.name == model_name).first()
        if db_model is None:
            raise ModelNotFound(model_name)
        db_conv.model_id = db_model.id
    if name is not None:
        db_conv.name = name
    db.commit()
    db.refresh(db_conv)
    return db_conv


def delete_conversation(db: Session, conv_id: int) -> bool:
    db_conv = get_conversation(db, conv_id)
    if db_conv:
        db.delete(db_conv)
        db.commit()
        return True
    return False


def list_messages(db: Session, conv_id: int) -> List[MessageDB]:
    """All messages of a conversation in (inserted_at, id) order."""
    return (
        db.query(MessageDB)
        .filter(MessageDB.conversation_id == conv_id)
        .order_by(MessageDB.inserted_at, MessageDB.id)
        .all()
    )


def add_message(db: Session, conv_id: int, who: Speaker, body: str) -> MessageDB:
    """Stage a message and flush it so it has an id. The caller owns the commit."""
    db_msg = MessageDB(conversation_id=conv_id, who=who, body=body)
    db.add(db_msg)
    db.flush()
    return db_msg


def get_message(db: Session, message_id: int) -> Optional[MessageDB]:
    return db.query(MessageDB).filter(MessageDB.id == message_id).first()


def append_to_message(db: Session, message_id: int, text: str) -> bool:
    """Append `text` to a message body in a single UPDATE, so readers only ever see a prefix."""
    result = db.execute(
        update(MessageDB)
        .where(MessageDB.id == message_id)
        .values(body=MessageDB.body + text, updated_at=utcnow())
    )
    db.commit()
    return result.rowcount > 0


def delete_message(db: Session, message_id: int) -> bool:
    db_msg = get_message(db, message_id)
    if db_msg:
        db.delete(db_msg)
        db.commit()
        return True
    return False


def list_models(db: Session) -> List[ModelDB]:
    return db.query(ModelDB).order_by(ModelDB.id).all()


def upsert_models(db: Session, names: Iterable[str]) -> List[ModelDB]:
    """Remember every reported model name; names already known are left untouched."""
    known = {m.name for m in db.query(ModelDB).all()}
    for name in names:
        if name and name not in known:
            db.add(ModelDB(name=name))
            known.add(name)
    db.commit()
    return list_models(db)
