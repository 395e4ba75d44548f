"""
Registry of rollout entrypoints.

Importing a user module runs its `@rollout_entrypoint` decorators. They
register into whichever EntrypointRegistry is currently collecting; outside
of `registry.collecting()` the decorator leaves the function untouched and
registers nothing.

    registry = EntrypointRegistry()
    registry.load_file("agent.py")
    entrypoint = registry.select()
"""

import contextlib
import dataclasses
import importlib
import importlib.util
import os
import sys
import uuid
from contextvars import ContextVar
from types import ModuleType
from typing import Any, Callable, Iterator, TypeVar, overload

from rollout_dev.sdk.log import get_default_logger

logger = get_default_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

_COLLECTING_REGISTRY: ContextVar["EntrypointRegistry | None"] = ContextVar(
    "__rollout_dev_collecting_registry", default=None
)


class EntrypointSelectionError(ValueError):
    pass


@dataclasses.dataclass
class Entrypoint:
    name: str
    func: Callable[..., Any]
    # attribute the function is bound to in its module, filled after load
    export_name: str | None = None


class EntrypointRegistry:
    def __init__(self):
        self._entrypoints: dict[str, Entrypoint] = {}

    def __len__(self) -> int:
        return len(self._entrypoints)

    def __contains__(self, name: str) -> bool:
        return name in self._entrypoints

    def names(self) -> list[str]:
        return list(self._entrypoints.keys())

    def get(self, name: str) -> Entrypoint | None:
        return self._entrypoints.get(name)

    def entrypoints(self) -> list[Entrypoint]:
        return list(self._entrypoints.values())

    def register(self, name: str, func: Callable[..., Any]) -> None:
        if name in self._entrypoints and self._entrypoints[name].func is not func:
            logger.warning(f"Rollout entrypoint '{name}' registered twice, keeping the last one")
        self._entrypoints[name] = Entrypoint(name=name, func=func)

    @contextlib.contextmanager
    def collecting(self) -> Iterator["EntrypointRegistry"]:
        """Route `@rollout_entrypoint` registrations into this registry."""
        token = _COLLECTING_REGISTRY.set(self)
        try:
            yield self
        finally:
            _COLLECTING_REGISTRY.reset(token)

    def load_file(self, file_path: str) -> ModuleType:
        """
        Execute a Python file as a fresh module and collect its entrypoints.

        The file's directory is put on sys.path so sibling imports work.
        """
        file_abs_path = os.path.abspath(file_path)
        file_dir = os.path.dirname(file_abs_path)
        if file_dir not in sys.path:
            sys.path.insert(0, file_dir)

        base_name = os.path.splitext(os.path.basename(file_abs_path))[0]
        # a new name on every load so re-discovery never reuses a stale module
        module_name = f"__rollout_dev_{base_name}_{uuid.uuid4().hex[:8]}"
        spec = importlib.util.spec_from_file_location(module_name, file_abs_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Could not load module from {file_path}")

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        with self.collecting():
            try:
                spec.loader.exec_module(module)
            except BaseException:
                sys.modules.pop(module_name, None)
                raise

        self._resolve_export_names(module)
        return module

    def load_module(self, module_path: str) -> ModuleType:
        """Import a module by dotted path (relative to the cwd) and collect its entrypoints."""
        cwd = os.getcwd()
        if cwd not in sys.path:
            sys.path.insert(0, cwd)

        with self.collecting():
            if module_path in sys.modules:
                module = importlib.reload(sys.modules[module_path])
            else:
                module = importlib.import_module(module_path)

        self._resolve_export_names(module)
        return module

    def _resolve_export_names(self, module: ModuleType) -> None:
        # decorators applied on top of @rollout_entrypoint wrap the registered
        # function; follow __wrapped__ so the module attribute is still found
        by_identity: dict[int, tuple[str, Any]] = {}
        for attr, value in vars(module).items():
            inner = value
            while inner is not None and id(inner) not in by_identity:
                by_identity[id(inner)] = (attr, value)
                inner = getattr(inner, "__wrapped__", None)

        for entrypoint in self._entrypoints.values():
            if entrypoint.export_name is not None:
                continue
            if found := by_identity.get(id(entrypoint.func)):
                entrypoint.export_name, entrypoint.func = found
            else:
                entrypoint.export_name = getattr(entrypoint.func, "__name__", None)

    def select(self, function_name: str | None = None) -> Entrypoint:
        """
        Pick the entrypoint to run.

        Args:
            function_name: Registered name or export name. When omitted, the
                registry must hold exactly one entrypoint.

        Raises:
            EntrypointSelectionError: If nothing matches or the choice is ambiguous
        """
        if not self._entrypoints:
            raise EntrypointSelectionError(
                "No rollout entrypoints found. "
                "Add @rollout_entrypoint to a function."
            )

        available = ", ".join(self._entrypoints.keys())
        if function_name:
            if function_name in self._entrypoints:
                return self._entrypoints[function_name]
            for entrypoint in self._entrypoints.values():
                if entrypoint.export_name == function_name:
                    return entrypoint
            raise EntrypointSelectionError(
                f"Function '{function_name}' not found. Available: {available}"
            )

        if len(self._entrypoints) > 1:
            raise EntrypointSelectionError(
                f"Multiple entrypoints found: {available}. "
                "Please specify one with --function."
            )
        return next(iter(self._entrypoints.values()))


def register_entrypoint(name: str, func: Callable[..., Any]) -> bool:
    """
    Register into the collecting registry, if any.

    Returns:
        bool: Whether a registry was collecting
    """
    registry = _COLLECTING_REGISTRY.get()
    if registry is None:
        return False
    registry.register(name, func)
    return True


@overload
def rollout_entrypoint(func: F) -> F: ...


@overload
def rollout_entrypoint(*, name: str | None = None) -> Callable[[F], F]: ...


def rollout_entrypoint(func=None, *, name=None):
    """
    Mark a function as a rollout entrypoint.

    Can be used bare (`@rollout_entrypoint`) or with a name
    (`@rollout_entrypoint(name="agent")`). The function itself is returned
    unchanged.
    """

    def decorator(fn: F) -> F:
        register_entrypoint(name or fn.__name__, fn)
        return fn

    if func is not None:
        return decorator(func)
    return decorator
