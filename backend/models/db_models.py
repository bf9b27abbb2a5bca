import enum
import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, Enum, ForeignKey, Index
from sqlalchemy.orm import relationship
from database import Base


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class Speaker(str, enum.Enum):
    """Who authored a message. The value is the serialized form stored in `messages.who`."""
    HUMAN = "human"
    MODEL = "model"


class ModelDB(Base):
    __tablename__ = "models"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False)
    inserted_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ConversationDB(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    model_id = Column(Integer, ForeignKey("models.id"), nullable=True)
    # Set only by forking; a deleted source leaves the fork in place with no lineage
    source_conversation_id = Column(
        Integer, ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True
    )
    inserted_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    model = relationship("ModelDB")
    messages = relationship(
        "MessageDB",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: [MessageDB.inserted_at, MessageDB.id],
    )


class MessageDB(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    body = Column(Text, nullable=False, default="")
    who = Column(
        Enum(
            Speaker,
            name="speaker",
            native_enum=False,
            validate_strings=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )
    conversation_id = Column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    inserted_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    conversation = relationship("ConversationDB", back_populates="messages")

    __table_args__ = (Index("ix_messages_conversation_order", "conversation_id", "inserted_at", "id"),)
