from tickq.worker.pipeline import (
    enqueue_due_schedules,
    enqueue_job,
    recover_stale_jobs,
    run_jobs_once,
    run_tick,
)

__all__ = [
    "enqueue_job",
    "run_jobs_once",
    "recover_stale_jobs",
    "enqueue_due_schedules",
    "run_tick",
]
