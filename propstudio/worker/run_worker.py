"""Run ARQ worker. Usage: python -m propstudio.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from propstudio.worker.tasks import drive_job, get_redis_settings, resume_stalled_jobs, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [drive_job]
    cron_jobs = [
        cron(resume_stalled_jobs, second=0),  # every minute at :00
    ]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 20


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
