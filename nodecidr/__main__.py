import asyncio
import logging
import signal
import sys
from typing import List, Optional

from . import config
from .context import ControllerContext, start_controllers
from .controller import Controller

logger = logging.getLogger(__name__)


class NodeCIDRApp:
    """Main application class running the node CIDR controllers."""

    def __init__(self, settings: config.Settings):
        self.settings = settings
        self.ctx: Optional[ControllerContext] = None
        self.controllers: List[Controller] = []

    def setup(self) -> None:
        """Builds the controller context and the controllers for the configured topology."""
        self.ctx = ControllerContext(self.settings)
        self.controllers = start_controllers(self.ctx)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                logger.warning(f"Cannot install handler for {sig.name}")

    def stop(self) -> None:
        if self.ctx is not None and not self.ctx.stop.is_set():
            logger.info("Stop requested, finishing in-flight work")
            self.ctx.stop.set()

    async def run(self) -> int:
        """
        Runs the caches and controllers until a stop signal arrives.

        Returns:
            0 after a requested stop, 1 when a controller ended on its own.
        """
        self.setup()
        self._install_signal_handlers()

        ctx = self.ctx
        cache_tasks = [asyncio.create_task(cache.run(ctx.stop)) for cache in ctx.caches]
        controller_tasks = [
            asyncio.create_task(controller.run(self.settings.workers, ctx.stop)) for controller in self.controllers
        ]

        await asyncio.wait(controller_tasks, return_when=asyncio.FIRST_COMPLETED)
        failed = not ctx.stop.is_set()
        if failed:
            logger.error("A controller stopped before shutdown was requested, stopping the others")
        ctx.stop.set()

        results = await asyncio.gather(*controller_tasks, return_exceptions=True)
        for controller, result in zip(self.controllers, results):
            if isinstance(result, Exception):
                logger.error(f"{controller.name} failed: {result}")
                failed = True
        await asyncio.gather(*cache_tasks)
        return 1 if failed else 0


def cli():
    """Main command-line entrypoint."""
    try:
        settings = config.load_settings()
        settings.validate()
    except (OSError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    app = NodeCIDRApp(settings)
    exit_code = 0
    try:
        exit_code = asyncio.run(app.run())
    except (KeyboardInterrupt, SystemExit) as e:
        if isinstance(e, SystemExit) and e.code == 0:
            logger.info("Exiting normally.")
        elif isinstance(e, SystemExit):
            logger.error(f"Exiting due to fatal error (code {e.code}).")
        else:
            logger.info("Exiting.")
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    cli()
