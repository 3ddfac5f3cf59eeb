import asyncio
import logging
from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.fsm.storage.memory import MemoryStorage

from config import BOT_TOKEN
from background import cancel_all
from database import init_db, get_or_create_user, enable_wal
from notifications import Notifier
from sessions import SessionStore
from uploads import UploadWaiter
from verification import get_code_sender
from wizard import EventWizard
from handlers.common import router as common_router
from handlers.events import router as events_router
from handlers.review import router as review_router
from handlers.registration import router as registration_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

PURGE_INTERVAL = 60

default_properties = DefaultBotProperties(parse_mode="HTML")
bot = Bot(token=BOT_TOKEN, default=default_properties)

sessions = SessionStore()
uploads = UploadWaiter()
notifier = Notifier(bot)
wizard = EventWizard(sessions, get_code_sender())

# Shared services are injected into handlers by parameter name
dp = Dispatcher(
    storage=MemoryStorage(),
    notifier=notifier,
    wizard=wizard,
    uploads=uploads,
    sessions=sessions,
)

# Connect the routers; the file catch-all in registration goes last
dp.include_router(common_router)
dp.include_router(events_router)
dp.include_router(review_router)
dp.include_router(registration_router)

# Middleware that loads (or creates) the user row for every update
async def user_middleware(handler, event, data):
    tg_user = data.get("event_from_user")
    if tg_user is not None:
        data["db_user"] = await get_or_create_user(tg_user.id, tg_user.full_name, tg_user.username)
    return await handler(event, data)

dp.message.outer_middleware(user_middleware)
dp.callback_query.outer_middleware(user_middleware)

async def purge_sessions(store: SessionStore, interval: float = PURGE_INTERVAL):
    while True:
        await asyncio.sleep(interval)
        removed = store.purge_expired()
        if removed:
            logger.info("Purged %s expired wizard sessions", removed)

async def main():
    logger.info("Initializing database...")
    await init_db()
    await enable_wal()
    logger.info("Database ready (WAL). Starting bot...")
    purge_task = asyncio.create_task(purge_sessions(sessions))
    try:
        await dp.start_polling(bot)
    finally:
        purge_task.cancel()
        await cancel_all()

if __name__ == "__main__":
    asyncio.run(main())
