"""
Analytics Thresholds

Every heuristic cut-off used by the insight and recommendation engines and
the body-area stats, in one place so each can be tuned and tested on its own.
"""
from dataclasses import dataclass


@dataclass(frozen=True)
class AnalyticsThresholds:
    # Insight windows
    insight_window_days: int = 30

    # Pattern analysis
    pattern_min_entries: int = 7
    morning_before_hour: float = 10.0   # mean hour < 10 -> "Morgen"
    evening_after_hour: float = 18.0    # mean hour > 18 -> "Abend"

    # Plateau detection
    plateau_min_entries: int = 10

    # Motivation
    motivation_streak_below: int = 3

    # Optimization
    optimization_min_lifetime_entries: int = 20
    optimization_min_area_sessions: int = 5

    # Recommendations
    recommendation_window_days: int = 14
    neglected_area_limit: int = 2
    neglected_area_priority: int = 8
    progression_min_sessions: int = 5
    progression_priority: int = 7
    comeback_after_days: int = 3
    comeback_priority: int = 9
    recovery_window_days: int = 3
    recovery_min_sessions: int = 6
    recovery_priority: int = 6

    # Body-area stats
    consistency_window_days: int = 30
    favorite_exercise_count: int = 3
    mastery_intermediate_sessions: int = 10
    mastery_advanced_sessions: int = 25
    mastery_expert_sessions: int = 50

    # User stats
    top_exercise_count: int = 10

    # Trends
    trend_default_days: int = 90
    trend_change_percent: float = 10.0
    trend_max_days: int = 365


DEFAULT_THRESHOLDS = AnalyticsThresholds()
