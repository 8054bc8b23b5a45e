import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from flint.exceptions import NotFoundError, ValidationError
from flint.models import Account, Goal
from flint.services.base import UserScopedCRUD

logger = logging.getLogger(__name__)

GOAL_TYPES = ("emergency_fund", "retirement", "home", "education", "vacation", "custom")


class GoalCRUD(UserScopedCRUD[Goal]):
    model = Goal


goals = GoalCRUD()


def get_goals(db: Session, user_id: str) -> list[Goal]:
    """Get a user's goals, newest first."""
    return goals.get_all(db, user_id, order_by=Goal.created_at.desc())


def get_goal(db: Session, user_id: str, goal_id: int) -> Goal:
    goal = goals.get_by_id(db, user_id, goal_id)
    if goal is None:
        raise NotFoundError("Goal", goal_id)
    return goal


def _check_linked_account(db: Session, user_id: str, account_id: str | None) -> None:
    if account_id is None:
        return
    account = db.get(Account, account_id)
    if account is None or account.connection.local_user_id != user_id:
        raise ValidationError(f"Unknown account {account_id}", field="linked_account_id")


def create_goal(db: Session, user_id: str, **fields) -> Goal:
    """Create a goal; amounts must be non-negative and the type known."""
    if fields.get("type") not in GOAL_TYPES:
        raise ValidationError(f"type must be one of {GOAL_TYPES}", field="type")
    if fields.get("target_amount") is None or fields["target_amount"] <= 0:
        raise ValidationError("target_amount must be positive", field="target_amount")
    _check_linked_account(db, user_id, fields.get("linked_account_id"))
    goal = goals.create(db, user_id, **fields)
    logger.info("Created goal %d for user %s", goal.id, user_id)
    return goal


def update_goal(db: Session, user_id: str, goal_id: int, **fields) -> Goal:
    if fields.get("type") is not None and fields["type"] not in GOAL_TYPES:
        raise ValidationError(f"type must be one of {GOAL_TYPES}", field="type")
    _check_linked_account(db, user_id, fields.get("linked_account_id"))
    goal = goals.update(db, user_id, goal_id, **fields)
    if goal is None:
        raise NotFoundError("Goal", goal_id)
    return goal


def delete_goal(db: Session, user_id: str, goal_id: int) -> None:
    if not goals.delete(db, user_id, goal_id):
        raise NotFoundError("Goal", goal_id)


def sync_goal_from_account(db: Session, user_id: str, goal_id: int) -> Goal:
    """
    Set the goal's progress from its linked account.

    Uses the mirrored balance's total equity, falling back to the account's
    total balance. A goal whose target is met is marked completed.
    """
    goal = get_goal(db, user_id, goal_id)
    if goal.linked_account_id is None:
        raise ValidationError("Goal has no linked account", field="linked_account_id")
    account = db.get(Account, goal.linked_account_id)
    if account is None:
        raise NotFoundError("Account", goal.linked_account_id)

    amount = None
    if account.balance is not None:
        amount = account.balance.total_equity
    if amount is None:
        amount = account.total_balance
    goal.current_amount = amount if amount is not None else Decimal("0")

    if goal.current_amount >= goal.target_amount and goal.status == "active":
        goal.status = "completed"
        logger.info("Goal %d reached its target", goal.id)
    db.commit()
    db.refresh(goal)
    return goal
