from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from .models import CATEGORY_INDUSTRIES, PoolFilters, ReviewerProfile


class ConditionOperator(str, Enum):
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    IN = "in"
    IS_TRUE = "is_true"


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        field_value = context.get(self.field)
        return self._apply_operator(field_value, self.value)

    def _apply_operator(self, field_value: Any, compare_value: Any) -> bool:
        op = self.operator
        if op == ConditionOperator.IN: return field_value in compare_value if compare_value else False
        if op == ConditionOperator.IS_TRUE: return bool(field_value) is True
        # Missing numeric attributes never satisfy an ordering comparison
        if field_value is None:
            return False
        if op == ConditionOperator.GREATER_THAN_OR_EQUAL: return field_value >= compare_value
        return False


@dataclass
class ConditionGroup:
    """Conjunction of conditions. An empty group matches everything."""
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        return all(cond.evaluate(context) for cond in self.conditions)


# Placeholder choices a submitter can pick that mean "no restriction"
WILDCARDS = {"All ages", "All genders", "All locations", "All professions"}

DEMOGRAPHIC_FIELDS = (
    ("age_range", "age_ranges"),
    ("gender", "genders"),
    ("profession", "professions"),
    ("location", "locations"),
    ("education_level", "education_levels"),
)


def availability_conditions() -> ConditionGroup:
    return ConditionGroup(conditions=[
        Condition(field="is_available", operator=ConditionOperator.IS_TRUE),
        Condition(field="has_capacity", operator=ConditionOperator.IS_TRUE),
    ])


def targeting_conditions(filters: PoolFilters) -> ConditionGroup:
    """Compile submitter targeting into a condition group over reviewer attributes."""
    conditions: list[Union[Condition, ConditionGroup]] = []
    for attribute, filter_name in DEMOGRAPHIC_FIELDS:
        values = getattr(filters, filter_name)
        if not values or WILDCARDS.intersection(values):
            continue
        conditions.append(Condition(field=attribute, operator=ConditionOperator.IN, value=list(values)))
    if filters.experts_only:
        conditions.append(Condition(field="is_expert", operator=ConditionOperator.IS_TRUE))
    return ConditionGroup(conditions=conditions)


def expertise_conditions(category: str) -> ConditionGroup:
    """Experts must work in an industry relevant to the request category."""
    industries = CATEGORY_INDUSTRIES.get(category)
    if not industries:
        return ConditionGroup(conditions=[])
    return ConditionGroup(conditions=[
        Condition(field="industry", operator=ConditionOperator.IN, value=list(industries)),
    ])


def reviewer_context(reviewer: ReviewerProfile) -> dict:
    context = reviewer.model_dump()
    context["has_capacity"] = reviewer.has_capacity
    return context


def matches(reviewer: ReviewerProfile, *groups: ConditionGroup) -> bool:
    context = reviewer_context(reviewer)
    return all(group.evaluate(context) for group in groups)
