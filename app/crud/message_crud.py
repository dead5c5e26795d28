"""
Message CRUD.
"""
from typing import Any, Dict, List
from sqlalchemy.orm import Session
from sqlalchemy import func

from app.model.message import Message
from app.crud.base import CRUDBase, RowChange


class CRUDMessage(CRUDBase[Message, Dict[str, Any], Dict[str, Any]]):
    def list_by_request(self, db: Session, *, request_id: str) -> List[Message]:
        """Full history, oldest first. Equal timestamps fall back to id."""
        return self.select(
            db,
            filters={"ride_request_id": request_id},
            order_by=("created_at", "id"),
        )

    def update_where(
        self, db: Session, *, filters: Dict[str, Any], patch: Dict[str, Any]
    ) -> List[RowChange]:
        if patch.get("is_read") is False:
            raise ValueError("is_read can only move from false to true")
        return super().update_where(db, filters=filters, patch=patch)

    def mark_read(self, db: Session, *, request_id: str, receiver_id: str) -> List[RowChange]:
        return self.update_where(
            db,
            filters={"ride_request_id": request_id, "receiver_id": receiver_id, "is_read": False},
            patch={"is_read": True},
        )

    def unread_by_request(self, db: Session, *, receiver_id: str) -> Dict[str, int]:
        rows = (
            db.query(self.model.ride_request_id, func.count(self.model.id))
            .filter(self.model.receiver_id == receiver_id, self.model.is_read.is_(False))
            .group_by(self.model.ride_request_id)
            .all()
        )
        return {request_id: count for request_id, count in rows}


message_crud = CRUDMessage(Message)
