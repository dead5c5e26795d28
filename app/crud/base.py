"""
Base CRUD class plus the table-scoped accessors the realtime core relies on:
select / insert / update / delete with equality filters, where update and
delete report the rows they actually touched.
"""
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

from sqlalchemy import inspect
from sqlalchemy.orm import Query, Session

from app.core.database import Base
from app.utils.timestamps import as_utc

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType")
UpdateSchemaType = TypeVar("UpdateSchemaType")

RowChange = Tuple[Dict[str, Any], Dict[str, Any]]


def row_to_dict(obj: Any) -> Dict[str, Any]:
    """Column snapshot of a model instance, timestamps normalized to UTC."""
    data = {}
    for column in inspect(obj).mapper.column_attrs:
        value = getattr(obj, column.key)
        if isinstance(value, datetime):
            value = as_utc(value)
        data[column.key] = value
    return data


class CRUDBase(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    def __init__(self, model: Type[ModelType]):
        self.model = model

    def get(self, db: Session, id: Any) -> Optional[ModelType]:
        return db.query(self.model).filter(self.model.id == id).first()

    def create_from_dict(self, db: Session, *, obj_in: Dict[str, Any]) -> ModelType:
        db_obj = self.model(**obj_in)
        db.add(db_obj)
        db.commit()
        db.refresh(db_obj)
        return db_obj

    def _filtered(self, db: Session, filters: Dict[str, Any]) -> Query:
        query = db.query(self.model)
        for field, value in filters.items():
            column = getattr(self.model, field)
            if isinstance(value, (list, tuple, set, frozenset)):
                query = query.filter(column.in_(list(value)))
            else:
                query = query.filter(column == value)
        return query

    def select(
        self,
        db: Session,
        *,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Sequence[str] = (),
    ) -> List[ModelType]:
        """Equality/IN filtering. Prefix an order_by field with '-' for descending."""
        query = self._filtered(db, filters or {})
        for field in order_by:
            if field.startswith("-"):
                query = query.order_by(getattr(self.model, field[1:]).desc())
            else:
                query = query.order_by(getattr(self.model, field).asc())
        return query.all()

    def insert(self, db: Session, *, row: Dict[str, Any]) -> Dict[str, Any]:
        return row_to_dict(self.create_from_dict(db, obj_in=row))

    def update_where(
        self, db: Session, *, filters: Dict[str, Any], patch: Dict[str, Any]
    ) -> List[RowChange]:
        """Apply patch to every matching row. Returns (old, new) snapshots of the affected rows."""
        rows = self._filtered(db, filters).all()
        changes: List[RowChange] = []
        for obj in rows:
            old = row_to_dict(obj)
            for field, value in patch.items():
                setattr(obj, field, value)
            changes.append((old, obj))
        if not rows:
            return []
        db.commit()
        result = []
        for old, obj in changes:
            db.refresh(obj)
            result.append((old, row_to_dict(obj)))
        return result

    def delete_where(self, db: Session, *, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows = self._filtered(db, filters).all()
        removed = [row_to_dict(obj) for obj in rows]
        for obj in rows:
            db.delete(obj)
        if rows:
            db.commit()
        return removed
