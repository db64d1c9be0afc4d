from stackwright.planning.engine import PlanEngine
from stackwright.planning.models import ActionKind, AttributeChange, Plan, PlanAction

__all__ = ["ActionKind", "AttributeChange", "Plan", "PlanAction", "PlanEngine"]
