"""Load command module files as isolated Python modules."""
from __future__ import annotations
import asyncio
import importlib.util
import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Callable

from .dispatch import Dispatcher
from .models import ModuleMetadata, ModuleRecord, ModuleStatus

logger = logging.getLogger(__name__)

MODULE_NAMESPACE = "cmdsync_external"


class LoadError(Exception):
    """Raised when a single module fails to compile, execute or register."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message


@dataclass
class LoadedModule:
    """A module file that executed and exposes a callable ``register``."""
    path: str
    fingerprint: str
    module_name: str
    module: ModuleType
    register: Callable
    metadata: ModuleMetadata


def module_name_for(path: str, fingerprint: str) -> str:
    """Unique import name for one version of a module file."""
    slug = re.sub(r"[^0-9a-zA-Z_]", "_", path[:-3] if path.endswith(".py") else path)
    return f"{MODULE_NAMESPACE}.{slug}_{fingerprint[:12]}"


class ModuleLoader:
    """Executes module files and tears down what they registered."""

    def __init__(self, dispatcher: Dispatcher):
        self.dispatcher = dispatcher

    def load(self, root: Path, path: str, fingerprint: str) -> LoadedModule:
        """Execute ``root / path`` and validate the module it produces.

        Args:
            root: Repository root directory
            path: Module path relative to root
            fingerprint: Content fingerprint of the file

        Returns:
            LoadedModule with the validated register function and metadata

        Raises:
            LoadError: If the file cannot be compiled, raises during its
                top-level execution, lacks a callable register or declares
                malformed metadata
        """
        file_path = Path(root) / path
        module_name = module_name_for(path, fingerprint)

        spec = importlib.util.spec_from_file_location(module_name, file_path)
        if spec is None or spec.loader is None:
            raise LoadError(path, "not an importable Python file")

        module = importlib.util.module_from_spec(spec)
        # Registered before execution so dataclasses and pickling can resolve it
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except SyntaxError as e:
            sys.modules.pop(module_name, None)
            raise LoadError(path, f"syntax error at line {e.lineno}: {e.msg}") from e
        except (Exception, SystemExit, asyncio.CancelledError) as e:
            sys.modules.pop(module_name, None)
            raise LoadError(path, f"{type(e).__name__} during import: {e}") from e

        try:
            register = getattr(module, "register", None)
            if not callable(register):
                raise LoadError(path, "module does not define a callable register(handle)")

            default_name = Path(path).stem
            try:
                metadata = ModuleMetadata.from_module_attr(
                    getattr(module, "metadata", None), default_name)
            except ValueError as e:
                raise LoadError(path, f"invalid metadata: {e}") from e
        except LoadError:
            sys.modules.pop(module_name, None)
            raise

        logger.debug(f"Executed {path} as {module_name}")
        return LoadedModule(
            path=path,
            fingerprint=fingerprint,
            module_name=module_name,
            module=module,
            register=register,
            metadata=metadata,
        )

    def discard(self, loaded: LoadedModule) -> None:
        """Forget a module that executed but never became active."""
        sys.modules.pop(loaded.module_name, None)

    def unload(self, record: ModuleRecord) -> None:
        """Release everything a record owns. Never raises."""
        subscriptions = list(record.subscriptions)
        if record.handle is not None:
            record.handle.close()
            # Subscriptions a module made after register returned
            subscriptions.extend(s for s in record.handle.subscriptions if s not in subscriptions)

        released = 0
        for subscription in subscriptions:
            try:
                if self.dispatcher.remove(subscription):
                    released += 1
            except Exception:
                logger.exception(f"Error removing subscription {subscription.key!r} of {record.path}")
        record.subscriptions = []

        if record.module_name:
            sys.modules.pop(record.module_name, None)

        if record.status is ModuleStatus.LOADED:
            logger.info(f"Unloaded {record.path} ({released} subscription(s) released)")
        record.status = ModuleStatus.UNLOADED
        record.handle = None
