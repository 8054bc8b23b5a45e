"""Base CRUD operations for user-owned records."""

from typing import Any, Generic, TypeVar

from sqlalchemy.orm import Session

T = TypeVar("T")


class UserScopedCRUD(Generic[T]):
    """
    Generic CRUD over a model with `id` and `user_id` columns.

    Every lookup is filtered by owner, so a record belonging to another
    user behaves exactly like a missing one.

    Usage:
        class GoalCRUD(UserScopedCRUD[Goal]):
            model = Goal

        goals = GoalCRUD()
        goal = goals.get_by_id(db, "user-1", 1)
    """

    model: type[T]

    def get_by_id(self, db: Session, user_id: str, id: int) -> T | None:
        """Get a single record by ID."""
        return (
            db.query(self.model)
            .filter(self.model.id == id, self.model.user_id == user_id)  # type: ignore[attr-defined]
            .first()
        )

    def get_all(self, db: Session, user_id: str, *, order_by: Any | None = None) -> list[T]:
        """Get all of a user's records, optionally ordered."""
        query = db.query(self.model).filter(self.model.user_id == user_id)  # type: ignore[attr-defined]
        if order_by is not None:
            query = query.order_by(order_by)
        return query.all()

    def create(self, db: Session, user_id: str, **kwargs) -> T:
        """Create a new record."""
        obj = self.model(user_id=user_id, **kwargs)
        db.add(obj)
        db.commit()
        db.refresh(obj)
        return obj

    def update(self, db: Session, user_id: str, id: int, **kwargs) -> T | None:
        """Update an existing record. Returns None if not found."""
        obj = self.get_by_id(db, user_id, id)
        if not obj:
            return None
        for key, value in kwargs.items():
            if value is not None:
                setattr(obj, key, value)
        db.commit()
        db.refresh(obj)
        return obj

    def delete(self, db: Session, user_id: str, id: int) -> bool:
        """Delete a record. Returns True if deleted, False if not found."""
        obj = self.get_by_id(db, user_id, id)
        if not obj:
            return False
        db.delete(obj)
        db.commit()
        return True
