from tickq.schedules.cadence import Cadence, CadenceError, compute_next_run_at, validate_cadence
from tickq.schedules.service import ScheduleConflictError, ScheduleNotFoundError, ScheduleService
from tickq.schedules.types import EnqueueDueResult, ScheduleSnapshot

__all__ = [
    "Cadence",
    "CadenceError",
    "compute_next_run_at",
    "validate_cadence",
    "ScheduleService",
    "ScheduleNotFoundError",
    "ScheduleConflictError",
    "ScheduleSnapshot",
    "EnqueueDueResult",
]
