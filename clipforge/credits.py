from enum import Enum


class UserPlan(str, Enum):
    FREE = "free"
    PRO = "pro"
    MAX = "max"


# max_projects of -1 means unlimited
PLAN_LIMITS = {
    UserPlan.FREE: {"credits": 0, "max_projects": 0},
    UserPlan.PRO: {"credits": 20, "max_projects": 10},
    UserPlan.MAX: {"credits": 100, "max_projects": -1},
}

CLIP_CREATION_COST = 1


def to_user_plan(value: str) -> UserPlan:
    try:
        return UserPlan(value)
    except ValueError:
        return UserPlan.FREE


def can_create_clip(credits: int, cost: int = CLIP_CREATION_COST) -> bool:
    return credits >= cost


def max_credits_for_plan(plan: UserPlan) -> int:
    return PLAN_LIMITS[plan]["credits"]


def credit_status_message(credits: int) -> str:
    if credits == 0:
        return "You've run out of credits. Upgrade your plan to continue creating clips."
    if credits <= 2:
        return f"You're running low on credits ({credits} remaining). Consider upgrading your plan."
    return f"{credits} credits remaining"
