from datetime import date, datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from flint.database import get_db
from flint.dependencies import get_current_user_id
from flint.services import goal_service

router = APIRouter()


class GoalCreate(BaseModel):
    type: str
    name: str
    target_amount: Decimal
    current_amount: Decimal = Decimal("0")
    linked_account_id: str | None = None
    deadline: date | None = None
    monthly_contribution: Decimal | None = None


class GoalUpdate(BaseModel):
    type: str | None = None
    name: str | None = None
    target_amount: Decimal | None = None
    current_amount: Decimal | None = None
    linked_account_id: str | None = None
    deadline: date | None = None
    monthly_contribution: Decimal | None = None
    status: str | None = None


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    name: str
    target_amount: Decimal
    current_amount: Decimal
    linked_account_id: str | None
    deadline: date | None
    monthly_contribution: Decimal | None
    status: str
    created_at: datetime


@router.get("/")
def list_goals(
    user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
) -> list[GoalOut]:
    return [GoalOut.model_validate(g) for g in goal_service.get_goals(db, user_id)]


@router.post("/", status_code=201)
def create_goal(
    body: GoalCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> GoalOut:
    goal = goal_service.create_goal(db, user_id, **body.model_dump())
    return GoalOut.model_validate(goal)


@router.get("/{goal_id}")
def get_goal(
    goal_id: int, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
) -> GoalOut:
    return GoalOut.model_validate(goal_service.get_goal(db, user_id, goal_id))


@router.patch("/{goal_id}")
def update_goal(
    goal_id: int,
    body: GoalUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> GoalOut:
    goal = goal_service.update_goal(db, user_id, goal_id, **body.model_dump(exclude_unset=True))
    return GoalOut.model_validate(goal)


@router.delete("/{goal_id}", status_code=204)
def delete_goal(
    goal_id: int, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
) -> None:
    goal_service.delete_goal(db, user_id, goal_id)


@router.post("/{goal_id}/sync")
def sync_goal(
    goal_id: int, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
) -> GoalOut:
    """Update progress from the linked account's balance."""
    return GoalOut.model_validate(goal_service.sync_goal_from_account(db, user_id, goal_id))
