"""Which worker process runs a given rollout target."""

import dataclasses
import os
import shlex
import shutil
import sys

from rollout_dev.cli.metadata import TS_JS_EXTENSIONS

DEFAULT_JS_WORKER = ["npx", "rollout-dev-js", "worker"]


@dataclasses.dataclass(frozen=True)
class WorkerCommand:
    command: str
    args: list[str]


def python_worker_command(python_executable: str | None = None) -> WorkerCommand:
    return WorkerCommand(
        command=python_executable or sys.executable,
        args=["-m", "rollout_dev.cli", "worker"],
    )


def get_worker_command(
    file_path: str | None = None,
    module_path: str | None = None,
    command: str | None = None,
    command_args: list[str] | str | None = None,
) -> WorkerCommand:
    """
    Resolve the worker for a target.

    An explicit `command` always wins. Otherwise Python modules and `.py`
    files run in `python -m rollout_dev.cli worker` with the current
    interpreter, and JS/TS files in the JS worker.

    Raises:
        ValueError: If no target is given or the extension has no worker
    """
    if command:
        if isinstance(command_args, str):
            command_args = shlex.split(command_args)
        return WorkerCommand(command=command, args=list(command_args or []))

    if module_path:
        return python_worker_command()

    if not file_path:
        raise ValueError("Either a file path or a Python module must be provided")

    ext = os.path.splitext(file_path)[1].lower()
    if ext == ".py":
        return python_worker_command()
    if ext in TS_JS_EXTENSIONS:
        executable = shutil.which(DEFAULT_JS_WORKER[0]) or DEFAULT_JS_WORKER[0]
        return WorkerCommand(command=executable, args=DEFAULT_JS_WORKER[1:])

    supported = ", ".join([".py", *TS_JS_EXTENSIONS])
    raise ValueError(
        f"Unsupported file extension: {ext or '(none)'}. "
        f"Supported extensions: {supported}"
    )
