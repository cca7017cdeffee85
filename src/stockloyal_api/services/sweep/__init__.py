from .dispatcher import SweepDispatcher
from .schedule import DayOfMonthSchedule, SweepSchedule

__all__ = ["DayOfMonthSchedule", "SweepDispatcher", "SweepSchedule"]
