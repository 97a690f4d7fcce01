"""Relay entrypoint. Loads config and state, wires the gateway, runs the Discord adapter."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from interserver import __version__
from interserver.adapters.discord import DiscordAdapter
from interserver.config import DEFAULTS, Config, cfg, load_config_with_env
from interserver.core.errors import ConfigurationError, StorageFailure
from interserver.gateway import (
    Announcer,
    Bus,
    CorrespondenceTable,
    DeliveryResolver,
    GroupRegistry,
    RelayDispatcher,
    RelaySettings,
)
from interserver.store import JsonGroupStore, PersistScheduler

# Third-party libraries to intercept and route through loguru
_INTERCEPTED_LIBRARIES = ["discord", "discord.client", "discord.gateway", "discord.http"]


def _intercept_logging(level: str) -> None:
    """Route discord.py's stdlib logging through loguru."""

    class InterceptHandler(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            try:
                log_level = logger.level(record.levelname).name
            except ValueError:
                log_level = str(record.levelno)
            msg = record.getMessage().replace("{", "{{").replace("}", "}}")
            logger.patch(
                lambda r: r.update(
                    name=record.name,
                    function=record.funcName,
                    line=record.lineno,
                ),
            ).opt(exception=record.exc_info).log(log_level, msg)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for lib in _INTERCEPTED_LIBRARIES:
        lib_logger = logging.getLogger(lib)
        lib_logger.handlers = [InterceptHandler()]
        lib_logger.propagate = False
        lib_logger.setLevel(level)


def _safe_message_filter(record: Any) -> bool:
    """Escape braces/angles in log messages to prevent format/tag errors."""
    if isinstance(record.get("message"), str):
        msg = record["message"]
        msg = msg.replace("{", "{{").replace("}", "}}").replace("<", "\\<")
        record["message"] = msg
    return True


def setup_logging(verbose: bool = False) -> None:
    """Configure loguru. verbose=True or LOG_LEVEL=DEBUG enables DEBUG; otherwise INFO."""
    level = "INFO"
    if verbose:
        level = "DEBUG"
    else:
        env_level = (os.environ.get("LOG_LEVEL") or "").upper()
        if env_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
            level = env_level

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=("<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | {message}"),
        filter=_safe_message_filter,
    )
    _intercept_logging(level)


def reload_config(config_path: Path) -> Config:
    """Load config from path and update global cfg."""
    data = load_config_with_env(config_path, DEFAULTS)
    cfg.reload(data)
    return cfg


@dataclass
class RelayApp:
    """Process-wide components built before the loop starts."""

    bus: Bus
    registry: GroupRegistry
    store: JsonGroupStore
    table: CorrespondenceTable
    persist: PersistScheduler
    loaded: bool = False

    def emergency_save(self) -> None:
        # Never overwrite stored state that was not loaded successfully
        if self.loaded:
            self.persist.save_sync()


def build_app(config: Config) -> RelayApp:
    bus = Bus()
    registry = GroupRegistry(bus, single_group_per_guild=config.single_group_per_guild)
    store = JsonGroupStore(config.store_path)
    table = CorrespondenceTable(
        ttl=config.correspondence_ttl_seconds,
        maxsize=config.correspondence_max_entries,
    )
    persist = PersistScheduler(
        registry,
        store,
        debounce=config.persist_debounce_seconds,
        interval=config.persist_interval_seconds,
    )
    return RelayApp(bus=bus, registry=registry, store=store, table=table, persist=persist)


def main() -> None:
    """Main entrypoint."""
    parser = argparse.ArgumentParser(description="Interserver relay: link Discord channels across servers")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    args = parser.parse_args()

    setup_logging(args.verbose)

    try:
        config = reload_config(args.config)
    except ConfigurationError as exc:
        logger.error("Invalid configuration: {}", exc)
        sys.exit(1)
    logger.info("Config loaded from {}", args.config)

    token = os.environ.get("RELAY_DISCORD_TOKEN")
    if not token:
        logger.error("RELAY_DISCORD_TOKEN not set")
        sys.exit(1)

    app = build_app(config)

    # Run async main (uvloop if available for better I/O throughput)
    try:
        try:
            import uvloop

            uvloop.run(_run(app, args.config, token))
        except ImportError:
            asyncio.run(_run(app, args.config, token))
    except KeyboardInterrupt:
        pass
    except StorageFailure as exc:
        logger.error("Cannot load relay state: {}", exc)
        sys.exit(1)
    except Exception as exc:
        logger.exception("Relay crashed: {}", exc)
        app.emergency_save()
        sys.exit(1)


async def _run(app: RelayApp, config_path: Path, token: str) -> None:
    """Async run loop. Restore state, start the adapter and wait for a stop signal."""
    config = cfg
    app.registry.restore(await app.store.load_all())
    app.loaded = True

    stop = asyncio.Event()
    failure: list[BaseException] = []

    def on_adapter_stopped(exc: BaseException | None) -> None:
        # The bot task ended on its own (login failure, fatal gateway error)
        if exc is not None:
            failure.append(exc)
        stop.set()

    adapter = DiscordAdapter(
        app.bus,
        app.registry,
        command_prefix=config.command_prefix,
        announce_startup=config.announce_startup,
        token=token,
        on_stopped=on_adapter_stopped,
    )
    announcer = Announcer(adapter)
    adapter.announcer = announcer
    resolver = DeliveryResolver(
        adapter,
        ttl=config.webhook_cache_ttl_seconds,
        maxsize=config.webhook_cache_max_entries,
        negative_ttl=config.webhook_negative_ttl_seconds,
    )
    dispatcher = RelayDispatcher(
        app.registry,
        app.table,
        resolver,
        adapter,
        settings=RelaySettings.from_config(config),
        delivery_timeout=config.delivery_timeout_seconds,
        delivery_retries=config.delivery_retries,
    )
    app.bus.register(dispatcher)
    app.bus.register(announcer)
    app.bus.register(app.persist)

    loop = asyncio.get_running_loop()

    def on_sighup() -> None:
        try:
            reload_config(config_path)
        except ConfigurationError as exc:
            logger.error("Config reload rejected, keeping previous values: {}", exc)
            return
        dispatcher.update_settings(RelaySettings.from_config(cfg))
        logger.info("Config reloaded (SIGHUP)")

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    if hasattr(signal, "SIGHUP"):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGHUP, on_sighup)

    logger.info("Relay ready: {} frequencies", len(app.registry))
    await adapter.start()
    background = [
        asyncio.create_task(dispatcher.run_sweeps(config.sweep_interval_seconds)),
        asyncio.create_task(app.persist.run_periodic()),
    ]

    try:
        await stop.wait()
        logger.info("Relay shutting down")
    finally:
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        await adapter.stop()
        await dispatcher.drain()
        await announcer.drain()
        await app.persist.close()
        logger.info("State saved to {}", app.store.path)

    if failure:
        raise failure[0]


if __name__ == "__main__":
    main()
