import asyncio
import logging
import sys

from aiohttp import web
from aiogram import Bot, Dispatcher
from aiogram.enums import ParseMode
from aiogram.client.default import DefaultBotProperties

from comms.config import config
from comms.cron import scheduler_loop
from comms.database.core import AsyncSessionLocal
from comms.handlers import escalation, threads, webhooks
from comms.middlewares.web import error_middleware, session_middleware
from comms.runtime import Runtime, RUNTIME_KEY, build_runtime


def create_app(runtime: Runtime) -> web.Application:
    # Order: Outer -> Inner
    # 1. Error mapping (wraps everything)
    # 2. DB Session (provides request["session"])
    app = web.Application(middlewares=[error_middleware, session_middleware(runtime.session_factory)])
    app[RUNTIME_KEY] = runtime
    app.add_routes(webhooks.routes)
    app.add_routes(threads.routes)
    return app


def create_dispatcher() -> Dispatcher:
    from comms.middlewares.db import DbSessionMiddleware
    from comms.middlewares.error import GlobalErrorMiddleware

    dp = Dispatcher()
    # Order matters: Error -> DB
    dp.callback_query.outer_middleware(GlobalErrorMiddleware())
    dp.callback_query.middleware(DbSessionMiddleware(AsyncSessionLocal))
    dp.include_router(escalation.router)
    return dp


async def main():
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        stream=sys.stdout,
    )

    bot = None
    if config.TELEGRAM_BOT_TOKEN:
        bot = Bot(
            token=config.TELEGRAM_BOT_TOKEN,
            default=DefaultBotProperties(parse_mode=ParseMode.HTML)
        )

    runtime = build_runtime(AsyncSessionLocal, bot=bot)

    runner = web.AppRunner(create_app(runtime))
    await runner.setup()
    await web.TCPSite(runner, config.WEB_HOST, config.WEB_PORT).start()
    logging.info(f"Webhooks listening on {config.WEB_HOST}:{config.WEB_PORT}")

    # Start Scheduler
    scheduler = asyncio.create_task(scheduler_loop(runtime))

    try:
        if bot is not None:
            logging.info("Starting escalation bot...")
            await create_dispatcher().start_polling(bot, runtime=runtime)
        else:
            logging.info("Telegram disabled, serving webhooks only")
            await asyncio.Event().wait()
    finally:
        scheduler.cancel()
        await runner.cleanup()
        if bot is not None:
            await bot.session.close()


def run():
    try:
        if sys.platform == "win32":
            asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Service stopped.")


if __name__ == "__main__":
    run()
