"""
Start a worker for one queue:

    python -m hookflow.workers agent-execution
    python -m hookflow.workers beat
"""

import sys

from .celery_app import celery_app, settings, worker_argv


def main(argv=None) -> None:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        sys.exit("usage: python -m hookflow.workers <queue-name>|beat")
    if argv[0] == "beat":
        celery_app.start(["beat", "--loglevel", "INFO"])
    else:
        celery_app.worker_main(worker_argv(settings, argv[0]))


if __name__ == "__main__":
    main()
