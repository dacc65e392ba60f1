"""
Async warm-up of the background removal model.
"""
import asyncio
import logging
import time
from typing import Optional

from background_removal import BackgroundRemover

logger = logging.getLogger(__name__)


class AsyncModelManager:
    """Loads the background remover's weights off the event loop, at most once at a time."""

    def __init__(self, remover: BackgroundRemover):
        self.remover = remover
        self.model_loading = False
        self.load_error: Optional[str] = None
        self.load_seconds: Optional[float] = None
        self.loading_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def model_loaded(self) -> bool:
        return self.remover.is_loaded

    async def ensure_model_loaded(self):
        """Load the model if needed; concurrent callers share one load."""
        if self.model_loaded:
            return

        async with self._lock:
            if self.model_loaded:
                return
            if self.loading_task is None or self.loading_task.done():
                self.loading_task = asyncio.create_task(self._warm_up())
            task = self.loading_task
        await task

    def warm_up_in_background(self) -> Optional[asyncio.Task]:
        """Schedule a warm-up without waiting for it (used at startup)."""
        if self.model_loaded:
            return None
        return asyncio.create_task(self.ensure_model_loaded())

    async def _warm_up(self):
        self.model_loading = True
        start = time.time()
        logger.info(f"Warming up {self.remover.name} background remover...")
        try:
            await asyncio.get_running_loop().run_in_executor(None, self.remover.warm_up)
            self.load_error = None
            self.load_seconds = round(time.time() - start, 2)
            logger.info(f"✅ {self.remover.name} ready in {self.load_seconds}s")
        except Exception as e:
            # Jobs still load lazily on first use; health reports the error
            self.load_error = str(e)
            logger.error(f"Failed to warm up {self.remover.name}: {e}")
        finally:
            self.model_loading = False

    def get_status(self) -> dict:
        """Get current model status for health checks."""
        return {
            "backend": self.remover.name,
            "model_loaded": self.model_loaded,
            "model_loading": self.model_loading,
            "load_seconds": self.load_seconds,
            "load_error": self.load_error,
        }
