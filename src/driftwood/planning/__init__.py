"""Plan computation."""

from driftwood.planning.models import Action, ActionType, AttributeChange, Plan, ReplaceOrder
from driftwood.planning.planner import Planner, apply_defaults, diff_attributes

__all__ = [
    "Action",
    "ActionType",
    "AttributeChange",
    "Plan",
    "Planner",
    "ReplaceOrder",
    "apply_defaults",
    "diff_attributes",
]
