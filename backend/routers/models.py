import asyncio
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List

from database import get_db
from models.schemas import ModelOut
from services import history
from services.errors import GenerationUnavailable
from services.generator import GenerationClient
from state import get_generator

router = APIRouter(prefix="/models", tags=["models"])


@router.get("", response_model=List[ModelOut])
def list_models(db: Session = Depends(get_db)):
    """Models previously reported by the generator."""
    return history.list_models(db)


@router.post("/refresh", response_model=List[ModelOut])
async def refresh_models(
    db: Session = Depends(get_db),
    generator: GenerationClient = Depends(get_generator),
):
    """Ask the generator which models it serves and remember any new names."""
    try:
        names = await generator.list_models()
    except GenerationUnavailable as e:
        raise HTTPException(status_code=502, detail=str(e))
    models = await asyncio.to_thread(history.upsert_models, db, names)
    return [ModelOut.model_validate(m) for m in models]
