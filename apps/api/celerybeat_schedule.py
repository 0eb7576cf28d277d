"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Delivery tick, every minute. Matches each user's local HH:MM against
    # the configured morning/evening slots, fires due reminders, and runs the
    # nudge sweep (every 10 min) and consistency check (hourly) off the same tick.
    'delivery-tick': {
        'task': 'tasks.run_delivery_tick',
        'schedule': crontab(minute='*'),
    },
}
