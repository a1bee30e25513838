"""Lifecycle contract shared by every pipeline component."""

import logging

logger = logging.getLogger(__name__)


class LifecycleService:
    """Explicit ``initialize()`` / ``cleanup()`` lifecycle.

    Both calls are idempotent.  Subclasses override ``_on_initialize`` and
    ``_on_cleanup``; a failing initialisation leaves the component
    uninitialised and propagates the error to the wiring code.
    """

    def __init__(self) -> None:
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._on_initialize()
        self._initialized = True
        logger.debug("%s initialized", type(self).__name__)

    async def cleanup(self) -> None:
        if not self._initialized:
            return
        try:
            await self._on_cleanup()
        finally:
            self._initialized = False
            logger.debug("%s cleaned up", type(self).__name__)

    async def _on_initialize(self) -> None:
        pass

    async def _on_cleanup(self) -> None:
        pass
