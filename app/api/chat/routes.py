from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List

from app.api.chat import schemas, services
from app.db.models.user import User
from app.db.session import get_db
from app.core.security import get_current_user

router = APIRouter()


def _owned_chat_or_404(db: Session, chat_id: str, user: User):
    chat = services.get_chat_by_id(db, chat_id, user.id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    return chat


@router.get("/sessions", response_model=List[schemas.ChatResponse])
def list_chats(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return services.list_user_chats(db, user_id=current_user.id)


@router.get("/sessions/{chat_id}", response_model=schemas.ChatWithMessagesResponse)
def retrieve_chat(
    chat_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return _owned_chat_or_404(db, chat_id, current_user)


@router.delete("/{chat_id}", response_model=schemas.ChatDeleteResponse)
def delete_chat(
    chat_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    chat = _owned_chat_or_404(db, chat_id, current_user)
    services.delete_chat(db, chat)
    return {"detail": "Chat deleted successfully"}


@router.patch("/{chat_id}/rename", response_model=schemas.ChatRenameResponse)
def rename_chat(
    chat_id: str,
    rename_data: schemas.ChatRenameRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    chat = _owned_chat_or_404(db, chat_id, current_user)
    updated = services.rename_chat(db, chat, new_title=rename_data.title)
    return {
        "detail": "Chat renamed successfully",
        "new_title": updated.title
    }
