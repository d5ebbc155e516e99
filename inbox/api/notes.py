"""Customer note endpoints."""

from typing import Any

from fastapi import APIRouter, HTTPException

from inbox.api.deps import CurrentUser, DbSession
from inbox.schemas.console import NoteRequest
from inbox.services.notes import NoteService

router = APIRouter(prefix="/api/notes", tags=["Notes"])


@router.get("/{customer_id}")
async def get_note(customer_id: str, db: DbSession, _user: CurrentUser) -> dict[str, Any]:
    note = await NoteService(db).get_note(customer_id)
    if note is None:
        return {"customer_id": customer_id, "content": ""}
    return note.to_dict()


@router.put("/{customer_id}")
@router.post("/{customer_id}")
async def save_note(
    customer_id: str,
    body: NoteRequest,
    db: DbSession,
    user: CurrentUser,
) -> dict[str, Any]:
    try:
        note = await NoteService(db).save_note(customer_id, body.content, edited_by=user.id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Customer not found")
    return note.to_dict()


@router.delete("/{customer_id}")
async def delete_note(customer_id: str, db: DbSession, _user: CurrentUser) -> dict[str, Any]:
    if not await NoteService(db).delete_note(customer_id):
        raise HTTPException(status_code=404, detail="Note not found")
    return {"message": "Note deleted successfully"}
