import asyncio
import contextlib
import logging
import signal

import uvicorn
from dotenv import load_dotenv

from core.config import Settings
from core.errors import ConfigError
from core.payment import FacilitatorClient
from core.relay import Relay
from core.worker import WorkerClient
from transports.discord_bot import DiscordAdapter, DiscordInteractions, register_commands
from transports.http_api import create_app
from transports.telegram_bot import TelegramTransport

log = logging.getLogger(__name__)


async def main():
    load_dotenv()
    try:
        settings = Settings.from_env()
    except ConfigError as exc:
        raise SystemExit(f"Invalid configuration: {exc}")
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s :: %(message)s")

    missing = settings.missing_required()
    if missing:
        raise SystemExit(f"Missing required environment variables: {', '.join(missing)}")

    relay = Relay(
        settings,
        facilitator=FacilitatorClient(settings.facilitator_url, timeout=settings.facilitator_timeout),
        worker=WorkerClient(settings.worker_url, timeout=settings.worker_timeout),
    )

    discord_interactions = None
    if settings.discord_public_key:
        discord_adapter = DiscordAdapter()
        relay.attach(discord_adapter)
        discord_interactions = DiscordInteractions(relay.intake, discord_adapter, settings)
        if settings.discord_bot_token:
            relay.supervisor.spawn(
                register_commands(
                    settings.discord_bot_token,
                    application_id=settings.discord_application_id,
                    guild_id=settings.discord_guild_id,
                ),
                name="discord-command-sync",
            )

    telegram_transport = None
    if settings.telegram_token:
        telegram_transport = TelegramTransport(relay.intake, relay.history, settings)
        relay.attach(telegram_transport.adapter)

    app = create_app(relay, discord=discord_interactions, telegram=telegram_transport)
    server = uvicorn.Server(
        uvicorn.Config(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    )

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    server_task = asyncio.create_task(server.serve())
    server_task.add_done_callback(lambda _: stop_event.set())
    reaper_task = asyncio.create_task(relay.reaper.run(stop_event))
    telegram_task = asyncio.create_task(telegram_transport.start()) if telegram_transport else None
    log.info("relay listening on %s:%s", settings.host, settings.port)

    await stop_event.wait()

    server.should_exit = True
    with contextlib.suppress(asyncio.CancelledError):
        await server_task

    if telegram_transport and telegram_task:
        await telegram_transport.stop()
        await telegram_task

    reaper_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await reaper_task

    await relay.close()


if __name__ == "__main__":
    asyncio.run(main())
