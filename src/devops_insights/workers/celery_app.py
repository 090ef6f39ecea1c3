"""Celery application factory and instance."""

from celery import Celery


def create_celery_app() -> Celery:
    """Create and configure the Celery application."""
    app = Celery("devops_insights")

    app.config_from_object("devops_insights.workers.config")
    app.autodiscover_tasks(["devops_insights.workers"])

    return app


celery_app = create_celery_app()

# Exposed for the celery CLI: celery -A devops_insights.workers.celery_app worker
app = celery_app
