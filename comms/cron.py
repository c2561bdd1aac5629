import asyncio
import logging

from comms.config import config
from comms.services.reminder_service import run_reminder_tick


async def scheduler_loop(runtime):
    """Reminder tick every SCHEDULER_TICK_SECONDS; also flushes quiet-hours replies."""
    logging.info("Scheduler started.")

    # Initial delay to settle startup
    await asyncio.sleep(5)

    while True:
        try:
            await run_reminder_tick(
                runtime.session_factory,
                runtime.dispatcher,
                catchup_minutes=config.REMINDER_CATCHUP_MINUTES,
                max_attempts=config.REMINDER_MAX_ATTEMPTS,
                retry_minutes=config.REMINDER_RETRY_MINUTES,
            )
            await asyncio.sleep(config.SCHEDULER_TICK_SECONDS)

        except asyncio.CancelledError:
            logging.info("Scheduler stopped.")
            raise
        except Exception as e:
            logging.error(f"Error in scheduler loop: {e}")
            await asyncio.sleep(60) # Prevent tight loop on error
