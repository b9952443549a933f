"""Pomodoro phase math.

Pure functions only: phase durations, next-phase transitions and
pause-aware elapsed time. All instants are epoch milliseconds.
"""

import math
from dataclasses import dataclass
from typing import Optional

from models import PomodoroPhase
from services.clock import is_finite

DEFAULT_LONG_BREAK_EVERY = 4


@dataclass(frozen=True)
class PomodoroSettings:
    """Phase lengths in minutes plus the long-break cadence."""
    work_minutes: int = 25
    short_break_minutes: int = 5
    long_break_minutes: int = 15
    long_break_every: int = DEFAULT_LONG_BREAK_EVERY


PRESETS: dict[str, PomodoroSettings] = {
    "classic": PomodoroSettings(25, 5, 15, 4),
    "deep_work": PomodoroSettings(50, 10, 20, 2),
    "sprint": PomodoroSettings(15, 3, 10, 4),
}

DEFAULT_SETTINGS = PRESETS["classic"]

# Inclusive bounds accepted from users
LIMITS = {
    "work_minutes": (1, 240),
    "short_break_minutes": (1, 60),
    "long_break_minutes": (1, 120),
    "long_break_every": (1, 12),
}


@dataclass(frozen=True)
class PhaseTransition:
    next_phase: PomodoroPhase
    next_cycle_count: int


@dataclass(frozen=True)
class PhaseSnapshot:
    """Point-in-time view of a session's pomodoro clock."""
    phase: PomodoroPhase
    cycle_count: int
    is_paused: bool
    duration_seconds: int
    elapsed_seconds: int
    remaining_seconds: int


def _coerce_phase(phase) -> PomodoroPhase:
    try:
        return PomodoroPhase(phase)
    except ValueError:
        return PomodoroPhase.work


def phase_duration_seconds(phase, settings: PomodoroSettings) -> int:
    """Length of ``phase`` in seconds; unknown phases use the work length."""
    phase = _coerce_phase(phase)
    if phase == PomodoroPhase.short_break:
        minutes = settings.short_break_minutes
    elif phase == PomodoroPhase.long_break:
        minutes = settings.long_break_minutes
    else:
        minutes = settings.work_minutes
    return max(0, minutes) * 60


def next_phase(current_phase, cycle_count: int, long_break_every) -> PhaseTransition:
    """Phase that follows ``current_phase``.

    A break always returns to work with the cycle count unchanged. Finishing
    work bumps the cycle count and picks a long break every
    ``long_break_every`` cycles.
    """
    if _coerce_phase(current_phase) != PomodoroPhase.work:
        return PhaseTransition(PomodoroPhase.work, cycle_count)

    next_count = cycle_count + 1
    every = long_break_every
    if not is_finite(every) or every <= 0:
        every = DEFAULT_LONG_BREAK_EVERY
    every = int(every)
    if next_count % every == 0:
        return PhaseTransition(PomodoroPhase.long_break, next_count)
    return PhaseTransition(PomodoroPhase.short_break, next_count)


def compute_elapsed_seconds(
    phase_started_at_ms: Optional[float],
    now_ms: Optional[float],
    paused_at_ms: Optional[float] = None,
) -> int:
    """Whole seconds spent in the current phase, frozen while paused."""
    effective_now = paused_at_ms if paused_at_ms is not None else now_ms
    if not is_finite(phase_started_at_ms) or not is_finite(effective_now):
        return 0
    return max(0, math.floor((effective_now - phase_started_at_ms) / 1000))


def adjust_phase_start_for_resume(
    phase_started_at_ms: float,
    paused_at_ms: Optional[float],
    now_ms: float,
) -> float:
    """Shift the phase start forward by the time spent paused."""
    if not is_finite(phase_started_at_ms) or not is_finite(now_ms):
        return now_ms
    if not is_finite(paused_at_ms):
        return phase_started_at_ms
    return phase_started_at_ms + (now_ms - paused_at_ms)


def resolve_settings(user_settings=None, task=None) -> PomodoroSettings:
    """Effective settings: task overrides win field by field over user defaults."""
    base = DEFAULT_SETTINGS
    if user_settings is not None:
        base = PomodoroSettings(
            work_minutes=user_settings.pomodoro_work_minutes,
            short_break_minutes=user_settings.pomodoro_short_break_minutes,
            long_break_minutes=user_settings.pomodoro_long_break_minutes,
            long_break_every=user_settings.pomodoro_long_break_every,
        )
    if task is None:
        return base
    return PomodoroSettings(
        work_minutes=task.pomodoro_work_minutes or base.work_minutes,
        short_break_minutes=task.pomodoro_short_break_minutes or base.short_break_minutes,
        long_break_minutes=task.pomodoro_long_break_minutes or base.long_break_minutes,
        long_break_every=task.pomodoro_long_break_every or base.long_break_every,
    )


def snapshot(
    phase,
    cycle_count: int,
    phase_started_at_ms: Optional[float],
    now_ms: float,
    settings: PomodoroSettings,
    paused_at_ms: Optional[float] = None,
) -> PhaseSnapshot:
    duration = phase_duration_seconds(phase, settings)
    elapsed = compute_elapsed_seconds(phase_started_at_ms, now_ms, paused_at_ms)
    return PhaseSnapshot(
        phase=_coerce_phase(phase),
        cycle_count=cycle_count,
        is_paused=paused_at_ms is not None,
        duration_seconds=duration,
        elapsed_seconds=elapsed,
        remaining_seconds=max(0, duration - elapsed),
    )
