from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session
from typing import List

from database import get_db
from models.db_models import ConversationDB
from models.schemas import (
    ConversationCreate,
    ConversationOut,
    ConversationSummary,
    ConversationUpdate,
    ForkRequest,
    MessageOut,
    MessageSend,
    PendingReply,
)
from services import history
from services.errors import (
    ConversationNotFound,
    ForkMismatch,
    GenerationUnavailable,
    MessageNotFound,
    ModelNotFound,
    NoModelSelected,
)
from services.forking import fork_conversation
from services.orchestrator import GenerationOrchestrator
from state import get_orchestrator

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _conversation_out(db: Session, db_conv: ConversationDB) -> ConversationOut:
    return ConversationOut(
        id=db_conv.id,
        name=db_conv.name,
        model=db_conv.model.name if db_conv.model else None,
        source_conversation_id=db_conv.source_conversation_id,
        inserted_at=db_conv.inserted_at,
        updated_at=db_conv.updated_at,
        messages=[MessageOut.model_validate(m) for m in history.list_messages(db, db_conv.id)],
    )


@router.get("", response_model=List[ConversationSummary])
def read_conversations(skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    return history.get_conversations(db, limit=limit, offset=skip)


@router.post("", response_model=ConversationOut, status_code=201)
def create_conversation(data: ConversationCreate, response: Response, db: Session = Depends(get_db)):
    db_conv = history.create_conversation(db, name=data.name)
    response.headers["Location"] = f"/conversations/{db_conv.id}"
    return _conversation_out(db, db_conv)


@router.get("/{conversation_id}", response_model=ConversationOut)
def read_conversation(conversation_id: int, db: Session = Depends(get_db)):
    db_conv = history.get_conversation(db, conversation_id)
    if db_conv is None:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return _conversation_out(db, db_conv)


@router.patch("/{conversation_id}", response_model=ConversationOut)
def update_conversation(conversation_id: int, data: ConversationUpdate, db: Session = Depends(get_db)):
    try:
        db_conv = history.update_conversation(db, conversation_id, name=data.name, model_name=data.model)
    except (ConversationNotFound, ModelNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _conversation_out(db, db_conv)


@router.delete("/{conversation_id}", status_code=204)
def delete_conversation(conversation_id: int, db: Session = Depends(get_db)):
    if not history.delete_conversation(db, conversation_id):
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return Response(status_code=204)


@router.post("/{conversation_id}/messages", response_model=PendingReply, status_code=202)
async def send_message(
    conversation_id: int,
    data: MessageSend,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.send_message(conversation_id, data.body)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NoModelSelected as e:
        raise HTTPException(status_code=409, detail=str(e))
    except GenerationUnavailable as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/{conversation_id}/fork", response_model=ConversationOut, status_code=201)
def fork(conversation_id: int, data: ForkRequest, response: Response, db: Session = Depends(get_db)):
    try:
        db_conv = fork_conversation(db, conversation_id, data.message_id)
    except (ConversationNotFound, MessageNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ForkMismatch as e:
        raise HTTPException(status_code=400, detail=str(e))
    # Send the caller on to the new conversation
    response.headers["Location"] = f"/conversations/{db_conv.id}"
    response.headers["HX-Redirect"] = f"/conversations/{db_conv.id}"
    return _conversation_out(db, db_conv)
