"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from services.plan_refresh_job import parse_cron
from services.plan_registry import refresh_schedule

# Schedule configuration
beat_schedule = {
    # Workout plan refresh sweep - daily at 2 AM UTC (every 30 min in development)
    'refresh-workout-plans': {
        'task': 'tasks.refresh_workout_plans',
        'schedule': parse_cron(refresh_schedule('workout')),
    },
    # Diet plan refresh sweep - daily at 3 AM UTC (every 35 min in development)
    'refresh-diet-plans': {
        'task': 'tasks.refresh_diet_plans',
        'schedule': parse_cron(refresh_schedule('diet')),
    },
}
