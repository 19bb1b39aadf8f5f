"""
Mapping between internal plan codes and the labels users see.

The free tier is sold as "Starter". Anything that renders or parses a plan
name goes through these functions instead of comparing display strings.
"""
from enum import Enum

from app.services.billing.plans import PlanCode


class PlanLabelCode(str, Enum):
    STARTER = "starter"
    PLUS = "plus"
    PRO = "pro"


_CODE_TO_LABEL = {
    PlanCode.FREE: PlanLabelCode.STARTER,
    PlanCode.PLUS: PlanLabelCode.PLUS,
    PlanCode.PRO: PlanLabelCode.PRO,
}

_LABEL_TO_CODE = {label: code for code, label in _CODE_TO_LABEL.items()}

_DISPLAY_NAMES = {
    PlanCode.FREE: "Starter",
    PlanCode.PLUS: "Plus",
    PlanCode.PRO: "Pro",
}


def to_plan_label_code(plan_code: PlanCode | str) -> PlanLabelCode:
    """Internal plan code -> user-facing label code. Raises ValueError on unknown codes."""
    return _CODE_TO_LABEL[PlanCode(plan_code)]


def to_plan_code_from_label(label_code: PlanLabelCode | str) -> PlanCode:
    """User-facing label code -> internal plan code. Raises ValueError on unknown labels."""
    return _LABEL_TO_CODE[PlanLabelCode(label_code)]


def is_free_plan(plan_code: PlanCode | str) -> bool:
    return plan_code == PlanCode.FREE


def get_plan_display_name(plan_code: PlanCode | str) -> str:
    return _DISPLAY_NAMES[PlanCode(plan_code)]
