import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

from models.db_models import Speaker


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: int
    who: Speaker
    body: str
    inserted_at: datetime.datetime
    updated_at: datetime.datetime


class ModelOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class ConversationSummary(BaseModel):
    id: int
    name: str
    model: Optional[str] = None
    source_conversation_id: Optional[int] = None
    message_count: int = 0
    inserted_at: datetime.datetime
    last_message_inserted_at: Optional[datetime.datetime] = None


class ConversationOut(BaseModel):
    id: int
    name: str
    model: Optional[str] = None
    source_conversation_id: Optional[int] = None
    inserted_at: datetime.datetime
    updated_at: datetime.datetime
    messages: List[MessageOut] = []


class ConversationCreate(BaseModel):
    name: Optional[str] = None


class ConversationUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    model: Optional[str] = None


class MessageSend(BaseModel):
    body: str = Field(min_length=1)


class ForkRequest(BaseModel):
    message_id: int


class PendingReply(BaseModel):
    conversation_id: int
    user_message: MessageOut
    reply_message_id: int
    # 1-based position of the placeholder reply within the conversation
    position: int
