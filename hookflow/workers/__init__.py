"""Worker runtime: service wiring, Celery app and tasks."""
