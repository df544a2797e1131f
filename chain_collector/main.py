import os
import sys
import asyncio
import logging
import signal
from aiohttp import web
from .chains import create_plugin
from .config import Config, ConfigError
from .monitor import NodeMonitor
from .web import create_web_app

logger = logging.getLogger(__name__)


def configure_logging(level: str = 'INFO'):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


def install_signal_handlers(loop, shutdown) -> set:
    """Run shutdown() on SIGTERM/SIGINT; the returned set holds the pending shutdown tasks."""
    pending = set()

    def on_signal():
        task = asyncio.ensure_future(shutdown())
        pending.add(task)
        task.add_done_callback(pending.discard)

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, on_signal)
    return pending


async def main_async():
    monitor = None
    runner = None

    # Load configuration
    config_path = os.getenv('CONFIG_PATH', 'config.yaml')
    try:
        config = Config(config_path)
    except (ConfigError, OSError) as e:
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)
    settings = config.settings
    logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))

    logger.info(f"Starting {settings.chain} metrics collector...")
    logger.info(f"  API endpoint: {settings.node_api_url}")
    logger.info(f"  Data dir:     {settings.data_dir}")
    logger.info(f"  Listen port:  {settings.listen_port}")
    logger.info(f"  Interval:     {settings.scrape_interval}s")

    async def shutdown():
        logger.info("Received shutdown signal")
        if monitor:
            try:
                await monitor.shutdown()
            except Exception as e:
                logger.error(f"Error during monitor shutdown: {e}")

    shutdown_tasks = install_signal_handlers(asyncio.get_running_loop(), shutdown)

    try:
        monitor = NodeMonitor(settings, create_plugin(settings))

        # Serve before the first cycle so early scrapes get the placeholder
        app = create_web_app(monitor.state)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, settings.listen_host, settings.listen_port)
        await site.start()
        logger.info(f"Metrics endpoint: http://{settings.listen_host}:{settings.listen_port}/metrics")

        await monitor.collect_metrics()

    except Exception as e:
        logger.error(f"Fatal error: {e}")
        await shutdown()
        sys.exit(1)
    finally:
        if shutdown_tasks:
            await asyncio.gather(*shutdown_tasks, return_exceptions=True)
        if runner:
            logger.info("Cleaning up runner...")
            await runner.cleanup()


def main():
    configure_logging(os.getenv('LOG_LEVEL', 'INFO'))
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    finally:
        logger.info("Program terminated")


if __name__ == "__main__":
    main()
