"""
Dependency injection container wiring the toastdedup components.
"""

from __future__ import annotations

import asyncio
import inspect
import signal
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog
import yaml
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from toastdedup.config import Config
from toastdedup.dedup import DedupCache, DeduplicationService, PolicyRegistry
from toastdedup.dedup.policy import ConfigUpdateResult
from toastdedup.errors import ConfigurationError
from toastdedup.observability import configure_logging
from toastdedup.performance import DeduplicationOptimizer

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazily created component whose ``start``/``stop`` the container drives."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def instance(self) -> Optional[T]:
        return self._instance

    async def get(self) -> T:
        """Get or create the instance."""
        if not self._initialized:
            self._instance = self._factory(*self._args, **self._kwargs)
            if callable(getattr(self._instance, "start", None)):
                await self._instance.start()  # type: ignore[attr-defined]
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Stop the instance if it was started."""
        if self._instance is not None and callable(getattr(self._instance, "stop", None)):
            await self._instance.stop()  # type: ignore[attr-defined]
        self._instance = None
        self._initialized = False


class ConfigWatcher(FileSystemEventHandler):
    """Schedules a reload on the container's loop when its config file changes."""

    def __init__(self, container: DependencyContainer, loop: asyncio.AbstractEventLoop) -> None:
        self.container = container
        self.loop = loop
        self.logger = structlog.get_logger(self.__class__.__name__)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._reload_if_config(event, event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        self._reload_if_config(event, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic saves rename a temp file over the config.
        self._reload_if_config(event, getattr(event, "dest_path", ""))

    def _reload_if_config(self, event: FileSystemEvent, path: Any) -> None:
        if event.is_directory or self.container.config_path is None or not path:
            return
        if Path(str(path)).resolve() != self.container.config_path.resolve():
            return
        self.logger.info("Configuration file changed, reloading", path=str(path), event=event.event_type)
        # Watchdog calls this from its own thread.
        self.loop.call_soon_threadsafe(lambda: asyncio.ensure_future(self.container.reload_config()))


class DependencyContainer:
    """
    Owns the configuration and the policy registry, dedup cache, core service
    and optimizer built from it. Provides lifecycle management and
    configuration hot-reloading that keeps accumulated dedup state.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.monotonic,
        watch_config: bool = True,
        install_signal_handlers: bool = False,
    ) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.clock = clock
        self.watch_config = watch_config
        self.install_signal_handlers = install_signal_handlers
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._registry: Optional[PolicyRegistry] = None
        self._cache: Optional[DedupCache] = None
        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._instances_lock = asyncio.Lock()
        self._observer: Optional[Any] = None  # Observer type
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.instance_id = str(uuid4())
        self.is_running = False
        self.reload_count = 0

    async def initialize(self) -> None:
        """Load configuration (unless one was provided) and build the components."""
        if self.config is None:
            self.config = self.load_config()
        configure_logging(self.config.monitoring)
        self._create_instances()

        if self.watch_config:
            await self._setup_config_watching()
        if self.install_signal_handlers:
            await self._setup_signal_handlers()

        self.is_running = True
        self.logger.info(
            "Dependency container initialized",
            instance_id=self.instance_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    def load_config(self) -> Config:
        """Read the YAML file if one is configured and present, else use defaults and environment."""
        if self.config_path and self.config_path.exists():
            return Config.from_yaml(self.config_path)
        return Config()

    def _create_instances(self) -> None:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")

        self._registry = PolicyRegistry(self.config.policies)
        self._cache = DedupCache(self.config.cache, clock=self.clock)
        service = DeduplicationService(
            self._registry,
            self._cache,
            clock=self.clock,
            record_metrics=self.config.monitoring.metrics_enabled,
        )

        self._instances = {
            "service": LazyInstance(lambda: service),
            "optimizer": LazyInstance(self._build_optimizer, service),
        }

    def _build_optimizer(self, service: DeduplicationService) -> DeduplicationOptimizer:
        # Reads the config at first use so a reload before then is honoured.
        assert self.config is not None
        return DeduplicationOptimizer(service, self.config.optimizer, clock=self.clock)

    async def reload_config(self) -> ConfigUpdateResult:
        """
        Re-read the configuration file and apply it to the running components.

        An unreadable or invalid file is rejected and the current configuration
        stays in force. Cached dedup entries survive a successful reload.
        """
        try:
            new_config = self.load_config()
        except ConfigurationError as e:
            self.logger.error("Configuration reload rejected", errors=list(e.errors))
            return ConfigUpdateResult(applied=False, errors=e.errors or (str(e),))
        except (OSError, ValueError, yaml.YAMLError) as e:
            self.logger.error("Configuration reload failed", error=str(e))
            return ConfigUpdateResult(applied=False, errors=(str(e),))

        old_config = self.config
        self.config = new_config
        if self._registry is not None:
            self._registry.replace_config(new_config.policies)

        if self._cache is not None:
            self._cache.config = new_config.cache

        optimizer_slot = self._instances.get("optimizer")
        if optimizer_slot is not None and optimizer_slot.instance is not None:
            optimizer_slot.instance.update_config(new_config.optimizer)

        if old_config is None or old_config.monitoring != new_config.monitoring:
            configure_logging(new_config.monitoring)

        self.reload_count += 1
        self.logger.info(
            "Configuration reloaded",
            instance_id=self.instance_id,
            changes_detected=old_config != new_config,
        )
        return ConfigUpdateResult(applied=True)

    def get_registry(self) -> PolicyRegistry:
        if self._registry is None:
            raise RuntimeError("Container has not been initialized")
        return self._registry

    async def get_service(self) -> DeduplicationService:
        """Get the core dedup service, starting its cache sweep on first use."""
        async with self._instances_lock:
            return await self._instances["service"].get()  # type: ignore[no-any-return]

    async def get_optimizer(self) -> DeduplicationOptimizer:
        """Get the optimizer; the service it wraps is started first."""
        await self.get_service()
        async with self._instances_lock:
            return await self._instances["optimizer"].get()  # type: ignore[no-any-return]

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Stop the config watcher, run shutdown handlers and stop every started component."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", instance_id=self.instance_id)

        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None

        for handler in self._shutdown_handlers:
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        await self._cleanup_instances()

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    async def _setup_config_watching(self) -> None:
        """Watch the configuration file's directory for edits."""
        if not self.config_path or not self.config_path.exists():
            return

        self._observer = Observer()
        handler = ConfigWatcher(self, asyncio.get_running_loop())
        self._observer.schedule(handler, str(self.config_path.parent), recursive=False)
        self._observer.start()

    async def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int, frame: Any) -> None:
            self.logger.info("Received signal, initiating shutdown", signal=signum)
            loop.call_soon_threadsafe(lambda: asyncio.ensure_future(self.shutdown()))

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

    async def _cleanup_instances(self) -> None:
        # Optimizer first so its pending batch still reaches a live service.
        for name in ("optimizer", "service"):
            instance = self._instances.get(name)
            if instance is None:
                continue
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up component", component=name, error=str(e))

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        """Add a custom shutdown handler."""
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        """Get health status of all managed components."""
        status: Dict[str, Any] = {
            "instance_id": self.instance_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "config_path": str(self.config_path) if self.config_path else None,
            "reload_count": self.reload_count,
            "components": {name: slot.initialized for name, slot in self._instances.items()},
        }

        service_slot = self._instances.get("service")
        if service_slot is not None and service_slot.instance is not None:
            stats = service_slot.instance.get_cache_stats()
            status["cache"] = {"size": stats.size, "has_space": service_slot.instance.has_space()}

        optimizer_slot = self._instances.get("optimizer")
        if optimizer_slot is not None and optimizer_slot.instance is not None:
            status["optimizer"] = optimizer_slot.instance.get_detailed_stats()
        return status
