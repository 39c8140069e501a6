"""Cluster matches by their early action profile and score the outcomes."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Sequence

from .models import MatchTrace, StrategyCard
from .series import round_half_up
from .settings import MatchingSettings

_MISSING_AVERAGE_PENALTY = -9999.0


@dataclass(frozen=True)
class ActionCategory:
    key: str
    title: str
    action_summary: str


@dataclass
class _Group:
    category: ActionCategory
    traces: list[MatchTrace] = field(default_factory=list)


def categorize_actions(insulin: float, carbs: float, window_minutes: int = 30) -> ActionCategory:
    """Map 0..window action totals to a strategy bucket with display text."""

    suffix = f"in first {window_minutes}m"
    if insulin > 0:
        summary = f"{insulin:.1f}U insulin {suffix}"
        if insulin < 1:
            return ActionCategory("correction.micro", "Micro correction", summary)
        if insulin <= 2:
            return ActionCategory("correction.small", "Small correction", summary)
        if insulin > 3:
            return ActionCategory("correction.aggressive", "Aggressive correction", summary)
        return ActionCategory("correction.other", "Correction", summary)
    if carbs > 0:
        return ActionCategory("carbs", "Carbs", f"{carbs:.0f}g carbs {suffix}")
    return ActionCategory("none", "No action", f"No carbs/insulin recorded {suffix}")


def strategy_score(card: StrategyCard, ideal_target: float) -> float:
    """Success rate dominates; closeness of the average to the ideal breaks ties."""

    success = card.success_rate if card.success_rate is not None else -1.0
    if card.avg_glucose_2h is None:
        closeness = _MISSING_AVERAGE_PENALTY
    else:
        closeness = -abs(card.avg_glucose_2h - ideal_target)
    return success * 1000.0 + closeness


def _summarize_group(key: str, group: _Group, settings: MatchingSettings) -> StrategyCard:
    outcomes: list[float] = []
    for trace in group.traces:
        value = trace.glucose_at(settings.outcome_minute)
        if value is not None:
            outcomes.append(value)

    avg: float | None = None
    success: float | None = None
    if outcomes:
        avg = float(round_half_up(sum(outcomes) / len(outcomes)))
        in_range = sum(1 for v in outcomes if settings.target_low <= v <= settings.target_high)
        success = round(in_range / len(outcomes), 2)

    return StrategyCard(
        key=key,
        title=group.category.title,
        action_summary=group.category.action_summary,
        count=len(group.traces),
        avg_glucose_2h=avg,
        success_rate=success,
    )


def build_strategies(matches: Sequence[MatchTrace], settings: MatchingSettings) -> list[StrategyCard]:
    """Group matches by action bucket, keep the largest groups and flag the best one."""

    groups: dict[str, _Group] = {}
    for trace in matches:
        category = categorize_actions(
            trace.actions.insulin,
            trace.actions.carbs,
            settings.action_window_minutes,
        )
        group = groups.get(category.key)
        if group is None:
            group = groups[category.key] = _Group(category)
        group.traces.append(trace)

    cards = [_summarize_group(key, group, settings) for key, group in groups.items()]
    cards.sort(key=lambda card: (-card.count, -strategy_score(card, settings.ideal_target)))
    top = cards[: settings.max_strategies]

    best_idx = -1
    best_score = float("-inf")
    for idx, card in enumerate(top):
        score = strategy_score(card, settings.ideal_target)
        if score > best_score:
            best_score = score
            best_idx = idx
    if best_idx >= 0:
        top[best_idx] = replace(top[best_idx], is_best=True)
    return top


__all__ = ["ActionCategory", "build_strategies", "categorize_actions", "strategy_score"]
