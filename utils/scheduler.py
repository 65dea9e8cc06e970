"""
Scheduled Tasks Module
Background housekeeping for the command queue
"""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)
scheduler = None


def expire_stale_commands_task(app):
    """
    Scheduled task that expires commands never completed within the horizon
    Runs every COMMAND_SWEEP_INTERVAL_MINUTES

    Returns:
        Number of commands expired, or None if the sweep failed
    """
    with app.app_context():
        from models import db
        from utils.command_queue import CommandQueue

        try:
            horizon = timedelta(hours=app.config['COMMAND_EXPIRY_HOURS'])
            expired = CommandQueue.expire_stale(older_than=horizon)
            logger.debug(f"Command sweep completed: {expired} expired")
            return expired

        except Exception as e:
            db.session.rollback()
            logger.error(f"Error in command sweep task: {e}")
            return None


def init_scheduler(app):
    """
    Initialize and start the background scheduler

    Args:
        app: Flask application instance
    """
    global scheduler

    if not app.config.get('COMMAND_SWEEP_ENABLED'):
        logger.info("Command sweep disabled")
        return

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return

    try:
        scheduler = BackgroundScheduler()

        interval = app.config.get('COMMAND_SWEEP_INTERVAL_MINUTES', 15)
        scheduler.add_job(
            func=expire_stale_commands_task,
            trigger=IntervalTrigger(minutes=interval),
            args=[app],
            id='expire_stale_commands',
            name='Expire stale device commands',
            replace_existing=True
        )
        logger.info(f"Command sweep started - every {interval} minutes")

        scheduler.start()
        logger.info("Scheduler started successfully")

    except Exception as e:
        scheduler = None
        logger.error(f"Failed to initialize scheduler: {e}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully"""
    global scheduler

    if scheduler is not None:
        try:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler shut down")
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}")
        finally:
            scheduler = None
