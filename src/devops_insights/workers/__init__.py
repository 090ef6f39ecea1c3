"""Celery worker for scheduled repository syncs."""
