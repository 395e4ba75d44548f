"""
Hot reload for the dev loop.

A watchdog observer reports file changes from its own thread; they are
handed to the event loop, where `ReloadScheduler` kills the active run at
once and marks the entrypoint for re-discovery once changes settle.
"""

import asyncio
import os
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from rollout_dev.sdk.log import get_default_logger

logger = get_default_logger(__name__)

RELOAD_DEBOUNCE = 0.1

IGNORED_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        "dist",
        "build",
        ".next",
        "coverage",
        ".turbo",
        "tmp",
        "temp",
        "venv",
        ".venv",
        "virtualenv",
        ".virtualenv",
        "__pycache__",
        ".pytest_cache",
        ".ruff_cache",
        ".mypy_cache",
        ".cache",
        ".DS_Store",
    }
)
IGNORED_EXTENSIONS = (".log", ".map")


def should_ignore(path: str, watch_dir: str) -> bool:
    """
    Whether a change to path should not trigger a reload.

    Only the part of the path below watch_dir is matched against
    IGNORED_DIRS, so a project that itself lives under e.g. /tmp or
    ~/build is still watched.
    """
    if path.endswith(IGNORED_EXTENSIONS):
        return True
    relative = os.path.relpath(os.path.realpath(path), os.path.realpath(watch_dir))
    parts = os.path.normpath(relative).split(os.sep)
    return any(part in IGNORED_DIRS for part in parts)


class ReloadScheduler:
    """
    Debounces file changes on the event loop.

    Every change calls `on_kill` right away; only `reload_due` waits for
    `debounce` seconds of quiet. The next run consumes the flag.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_kill: Callable[[], object],
        debounce: float = RELOAD_DEBOUNCE,
    ):
        self.loop = loop
        self.on_kill = on_kill
        self.debounce = debounce
        self.reload_due = False
        self.reload_count = 0
        self._timer: asyncio.TimerHandle | None = None

    def on_change(self, path: str) -> None:
        logger.debug(f"File changed: {path}")
        self.on_kill()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self.loop.call_later(self.debounce, self._fire)

    def _fire(self) -> None:
        self._timer = None
        self.reload_due = True
        self.reload_count += 1
        logger.info("Changes detected, entrypoint will be reloaded on the next run")

    @property
    def pending(self) -> bool:
        """A change arrived that the next run has not reloaded for yet."""
        return self._timer is not None or self.reload_due

    def consume_reload(self) -> bool:
        due, self.reload_due = self.reload_due, False
        return due

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class FileChangeHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread to the scheduler."""

    def __init__(self, scheduler: ReloadScheduler, watch_dir: str):
        super().__init__()
        self.scheduler = scheduler
        self.watch_dir = watch_dir

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in (
            "created",
            "modified",
            "deleted",
            "moved",
        ):
            return
        path = os.fsdecode(event.src_path)
        if should_ignore(path, self.watch_dir):
            return
        self.scheduler.loop.call_soon_threadsafe(self.scheduler.on_change, path)


def start_watcher(scheduler: ReloadScheduler, watch_dir: str) -> Observer:
    observer = Observer()
    observer.schedule(
        FileChangeHandler(scheduler, watch_dir), path=watch_dir, recursive=True
    )
    observer.start()
    logger.debug(f"Watching {watch_dir} for changes")
    return observer


def stop_watcher(observer: Observer | None) -> None:
    if observer is None:
        return
    observer.stop()
    observer.join()
