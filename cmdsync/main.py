from __future__ import annotations
import asyncio
import logging
import signal
from nio import AsyncClient, AsyncClientConfig, RoomMemberEvent, RoomMessageText

from .bridge import RegistrationBridge
from .config import BotConfig, load_config
from .diagnostics import DiagnosticCommands
from .discovery import ModuleDiscovery
from .dispatch import Dispatcher
from .git_mirror import GitMirror
from .handlers import EventRouter
from .loader import ModuleLoader
from .scheduler import SyncScheduler
from .transport import MatrixTransport

logging.basicConfig(level=logging.INFO,
                    format="[%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger("cmdsync")

STOP = asyncio.Event()


def _install_signal_handlers():
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: STOP.set())
        except NotImplementedError:  # Windows
            signal.signal(sig, lambda *_: STOP.set())


def build_scheduler(cfg: BotConfig, dispatcher: Dispatcher) -> SyncScheduler:
    """Wire mirror, discovery, loader and bridge for the configured repository."""
    ext = cfg.external
    mirror = GitMirror(
        ext.repo_url,
        ext.local_path,
        branch=ext.branch,
        timeout=ext.network_timeout
    )
    discovery = ModuleDiscovery(mirror.local_path, modules_dir=ext.modules_dir)
    loader = ModuleLoader(dispatcher)
    bridge = RegistrationBridge(dispatcher, timeout=ext.register_timeout)
    return SyncScheduler(mirror, discovery, loader, bridge, interval=ext.sync_interval)


async def run():
    cfg = load_config()
    logging.getLogger().setLevel(cfg.log_level.upper())
    _install_signal_handlers()

    client_cfg = AsyncClientConfig(store_sync_tokens=True)
    client = AsyncClient(cfg.homeserver, cfg.user_id,
                         device_id=cfg.device_id, config=client_cfg)
    # We rely on a pre-issued access token (no password login here), so
    # user_id must be set by hand for the self-message check.
    client.access_token = cfg.access_token
    client.user_id = cfg.user_id
    logger.info("Using provided access token for %s", client.user_id)

    transport = MatrixTransport(client)
    dispatcher = Dispatcher(sender=transport.send_message)

    scheduler = build_scheduler(cfg, dispatcher)
    diagnostics = DiagnosticCommands(dispatcher, scheduler, operators=cfg.allowed_operators)
    diagnostics.register()

    router = EventRouter(client, dispatcher, cfg)
    client.add_event_callback(router.on_message, RoomMessageText)
    client.add_event_callback(router.on_member, RoomMemberEvent)

    if cfg.display_name:
        try:
            await client.set_displayname(cfg.display_name)
        except Exception:
            logger.warning("Could not set display name", exc_info=True)

    # Runs in the background; an unreachable repository never blocks the bot
    scheduler.start()

    logger.info("Starting sync loop")
    while not STOP.is_set():
        try:
            await client.sync(timeout=30000)
        except Exception:
            logger.exception("Sync failed; retrying in 5s")
            await asyncio.sleep(5)

    logger.info("Shutting down")
    await scheduler.stop()
    diagnostics.unregister()
    await router.drain()
    await transport.close()


if __name__ == "__main__":
    asyncio.run(run())
