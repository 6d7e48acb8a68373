"""Discovery and registry of Bundle plugins.

Plugins are plain ``.py`` files dropped into a plugins directory (nested
directories are scanned too). Every concrete ``Bundle`` subclass defined in a
plugin module is instantiated with no arguments and registered. A module that
fails to import, or a class that fails to construct, is logged and skipped.
"""

import importlib.util
import inspect
import sys
import threading
from pathlib import Path
from types import ModuleType
from uuid import uuid4

from bundlehost.core.bundle import Bundle
from bundlehost.core.errors import BundleInstantiationError, BundleLoadError
from bundlehost.core.logging import get_logger

logger = get_logger("loader")

_MODULE_PREFIX = "bundlehost_plugins"


class BundleLoader:
    """Loads bundles from a directory and indexes them by id.

    Reads are lock-free: ``loaded_bundles`` is an immutable tuple replaced
    wholesale by ``load_bundles`` and ``register``, which serialize on a lock.
    """

    def __init__(self, plugins_path: str | Path = "plugins") -> None:
        self.plugins_path = plugins_path
        self._bundles: tuple[Bundle, ...] = ()
        self._write_lock = threading.Lock()

    @property
    def loaded_bundles(self) -> tuple[Bundle, ...]:
        return self._bundles

    def load_bundles(self, directory: str | Path | None = None) -> tuple[Bundle, ...]:
        """Scan a directory tree and register every bundle found.

        Calling this twice registers the same bundles twice; bundles are not
        de-duplicated by id.

        Args:
            directory: Directory to scan. Defaults to ``plugins_path``.

        Returns:
            Snapshot of all registered bundles after the scan.

        Raises:
            BundleLoadError: If the path is empty, is not a directory, or
                cannot be created.
        """
        root = self._resolve_directory(directory if directory is not None else self.plugins_path)
        logger.info(f"Loading bundles from: {root.resolve()}", extra={"plugins_path": str(root)})

        if not root.exists():
            logger.warning(f"Plugins directory '{root}' does not exist. Creating it...")
            try:
                root.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise BundleLoadError(f"Cannot create plugins directory '{root}': {e}") from e
            return self._bundles

        candidates = sorted(
            p for p in root.rglob("*.py") if p.is_file() and not p.name.startswith("_")
        )
        logger.info(f"Found {len(candidates)} plugin files")

        discovered: list[Bundle] = []
        for path in candidates:
            try:
                module = self._import_module(path)
            except BundleLoadError as e:
                logger.error(f"Error loading plugin from {path}: {e}", extra={"plugin_file": str(path)})
                continue
            discovered.extend(self._instantiate_bundles(module, path))

        with self._write_lock:
            self._bundles = self._bundles + tuple(discovered)
            snapshot = self._bundles

        logger.info(f"Successfully loaded {len(discovered)} bundles ({len(snapshot)} registered)")
        return snapshot

    def register(self, bundle: Bundle) -> None:
        """Register an already constructed bundle without scanning the filesystem."""
        if not isinstance(bundle, Bundle):
            raise TypeError(f"Expected a Bundle, got {type(bundle).__name__}")
        with self._write_lock:
            self._bundles = self._bundles + (bundle,)
        logger.info(f"Registered bundle {bundle.id}", extra={"bundle_id": bundle.id})

    def get_bundle_by_id(self, bundle_id: str | None) -> Bundle | None:
        """Return the first registered bundle with this id, or None."""
        if bundle_id is None or not str(bundle_id).strip():
            return None
        for bundle in self._bundles:
            if bundle.id == bundle_id:
                return bundle
        return None

    def initialize_bundles(self) -> None:
        logger.info(f"Initializing {len(self._bundles)} bundles")
        for bundle in self._bundles:
            try:
                bundle.initialize()
                logger.info(f"Initialized bundle: {bundle.friendly_name}", extra={"bundle_id": bundle.id})
            except Exception as e:
                logger.error(
                    f"Error initializing bundle {bundle.friendly_name}: {e}",
                    extra={"bundle_id": bundle.id, "error": str(e)},
                )

    def dispose_bundles(self) -> None:
        logger.info(f"Disposing {len(self._bundles)} bundles")
        for bundle in self._bundles:
            try:
                bundle.dispose()
                logger.debug(f"Disposed bundle: {bundle.friendly_name}", extra={"bundle_id": bundle.id})
            except Exception as e:
                logger.error(
                    f"Error disposing bundle {bundle.friendly_name}: {e}",
                    extra={"bundle_id": bundle.id, "error": str(e)},
                )

    @staticmethod
    def _resolve_directory(directory: str | Path) -> Path:
        if isinstance(directory, str) and not directory.strip():
            raise BundleLoadError("Plugins path must not be empty")
        path = Path(directory)
        if path.exists() and not path.is_dir():
            raise BundleLoadError(f"Plugins path '{path}' is not a directory")
        return path

    @staticmethod
    def _import_module(path: Path) -> ModuleType:
        # Unique name per load so repeated scans never reuse a cached module
        module_name = f"{_MODULE_PREFIX}_{path.stem}_{uuid4().hex[:8]}"
        spec = importlib.util.spec_from_file_location(module_name, str(path))
        if spec is None or spec.loader is None:
            raise BundleLoadError(f"Cannot create import spec for {path}")

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise BundleLoadError(f"{type(e).__name__}: {e}") from e
        logger.debug(f"Imported plugin module {path.name}", extra={"plugin_module": module_name})
        return module

    @staticmethod
    def _instantiate_bundles(module: ModuleType, path: Path) -> list[Bundle]:
        bundle_types = [
            obj
            for _, obj in inspect.getmembers(module, inspect.isclass)
            if issubclass(obj, Bundle)
            and not inspect.isabstract(obj)
            and obj.__module__ == module.__name__
        ]
        logger.debug(f"Found {len(bundle_types)} bundle types in {path.name}")

        bundles: list[Bundle] = []
        for bundle_type in bundle_types:
            try:
                bundle = _construct(bundle_type)
            except BundleInstantiationError as e:
                logger.error(
                    f"Error instantiating bundle {bundle_type.__name__}: {e}",
                    extra={"bundle_type": bundle_type.__name__, "plugin_file": str(path)},
                )
                continue

            logger.info(
                f"Successfully instantiated bundle: {bundle_type.__name__}",
                extra={"bundle_id": bundle.id, "version": bundle.version},
            )
            bundles.append(bundle)
        return bundles


def _construct(bundle_type: type[Bundle]) -> Bundle:
    try:
        return bundle_type()
    except Exception as e:
        raise BundleInstantiationError(f"{type(e).__name__}: {e}") from e
