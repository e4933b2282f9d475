import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from mail_scheduler.api import create_app
from mail_scheduler.callbacks import SchedulerCallbacks
from mail_scheduler.config_loader import load_settings
from mail_scheduler.core import SchedulerEngine
from mail_scheduler.delivery import SMTPDelivery
from mail_scheduler.logger import get_logger
from mail_scheduler.persistence import Persistence

# Configure logging level from environment
log_level = os.getenv("MSE_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def build_engine(settings: dict[str, object]) -> SchedulerEngine:
    """Wire storage, delivery and the scheduler together."""
    persistence = Persistence(str(settings["db_path"]))
    delivery = SMTPDelivery(persistence, send_timeout=float(settings["send_timeout"]))
    engine = SchedulerEngine(
        persistence=persistence,
        delivery=delivery,
        poll_interval=float(settings["poll_interval"]),
        initial_delay=float(settings["initial_delay"]),
        max_retries=int(settings["max_retries"]),
        send_timeout=float(settings["send_timeout"]),
    )
    logger = get_logger()
    engine.set_callbacks(
        SchedulerCallbacks(
            on_snooze_restore=lambda email_id, account_id, folder_id: logger.info(
                "Snoozed email %s back in folder %s (account=%s)", email_id, folder_id, account_id
            ),
            on_reminder_due=lambda email_id, account_id, subject, from_email: logger.info(
                "Reminder due for email %s from %s: %s (account=%s)", email_id, from_email, subject, account_id
            ),
            on_scheduled_send_result=lambda scheduled_id, success, error=None: logger.info(
                "Scheduled send %s %s%s", scheduled_id, "sent" if success else "failed", f": {error}" if error else ""
            ),
        )
    )
    return engine


if __name__ == "__main__":
    settings = load_settings()
    logging.getLogger().setLevel(getattr(logging, str(settings["log_level"]), logging.INFO))
    engine = build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.persistence.init_db()
        if settings.get("autostart"):
            await engine.start()
        yield
        await engine.stop()
        await engine.delivery.close()

    app = create_app(engine, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
