"""
Metadata discovery for rollout targets.

`discover_function_metadata` picks a ModuleLoader by target kind: Python
files are inspected in-process, Python modules and JS/TS files through a
subcommand that prints an `LMNR_METADATA:` line, anything else falls back
to the file's base name with no parameters.
"""

import abc
import asyncio
import dataclasses
import json
import os
import shlex
import sys
from typing import Any

from rollout_dev.cli.discover import METADATA_PROTOCOL_PREFIX, discover_entrypoint
from rollout_dev.sdk.log import get_default_logger
from rollout_dev.sdk.rollout.errors import DiscoveryError
from rollout_dev.sdk.rollout.types import DiscoveredMetadata

logger = get_default_logger(__name__)

TS_JS_EXTENSIONS = (".ts", ".tsx", ".js", ".mjs", ".cjs", ".jsx", ".mts", ".cts")
MODULE_TARGET = "module"
DEFAULT_JS_DISCOVER_COMMAND = ["npx", "rollout-dev-js", "discover"]
DISCOVERY_TIMEOUT = 120.0


@dataclasses.dataclass(frozen=True)
class DiscoveryTarget:
    file_path: str | None = None
    module_path: str | None = None

    @property
    def kind(self) -> str:
        if self.module_path:
            return MODULE_TARGET
        return os.path.splitext(self.file_path or "")[1].lower()

    @property
    def display_name(self) -> str:
        return self.module_path or self.file_path or ""


@dataclasses.dataclass
class DiscoveryOptions:
    function_name: str | None = None
    python_executable: str = sys.executable
    # overrides the JS/TS discovery command, e.g. "node ./discover.js"
    discover_command: str | None = None
    external_packages: list[str] | None = None
    dynamic_imports_to_skip: list[str] | None = None
    timeout: float = DISCOVERY_TIMEOUT


def _find_json_end(text: str) -> int | None:
    """Index just past the first balanced {...} or [...] in text, string-aware."""
    depth = 0
    in_string = False
    escape_next = False
    first_char = -1

    for i, char in enumerate(text):
        if escape_next:
            escape_next = False
            continue
        if char == "\\" and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue

        if char in "{[":
            if first_char == -1:
                first_char = i
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0 and first_char != -1:
                return i + 1
    return None


def extract_metadata_from_stdout(stdout: str) -> Any:
    """
    Extract the JSON metadata payload from output that may also contain logs.

    Every `LMNR_METADATA:` occurrence is tried; the last one that parses
    wins. Output without the prefix is parsed as plain JSON.

    Raises:
        DiscoveryError: If no metadata can be parsed
    """
    prefix_positions: list[int] = []
    search_start = 0
    while (pos := stdout.find(METADATA_PROTOCOL_PREFIX, search_start)) != -1:
        prefix_positions.append(pos)
        search_start = pos + len(METADATA_PROTOCOL_PREFIX)

    if not prefix_positions:
        try:
            return json.loads(stdout.strip())
        except json.JSONDecodeError:
            raise DiscoveryError(
                "No metadata found in output. "
                "Please make sure you are running the latest version of rollout-dev."
            )

    found = False
    last_valid: Any = None

    for pos in prefix_positions:
        start = pos + len(METADATA_PROTOCOL_PREFIX)
        json_text = stdout[start:].strip()

        next_newline = stdout.find("\n", start)
        if next_newline != -1:
            try:
                last_valid = json.loads(stdout[start:next_newline].strip())
                found = True
                continue
            except json.JSONDecodeError:
                pass

        end = _find_json_end(json_text)
        candidate = json_text[:end] if end is not None else json_text
        try:
            last_valid = json.loads(candidate)
            found = True
        except json.JSONDecodeError:
            continue

    if not found:
        raise DiscoveryError(
            "No valid metadata JSON found in output. "
            "Please make sure you are running the latest version of rollout-dev."
        )
    return last_valid


def _to_discovered(payload: Any) -> DiscoveredMetadata:
    if not isinstance(payload, dict) or "name" not in payload:
        raise DiscoveryError(f"Unexpected metadata payload: {payload!r}")
    return {"function_name": payload["name"], "params": payload.get("params") or []}


class ModuleLoader(abc.ABC):
    @abc.abstractmethod
    async def discover(
        self, target: DiscoveryTarget, options: DiscoveryOptions
    ) -> DiscoveredMetadata:
        """Describe the entrypoint in target.

        Raises:
            DiscoveryError: If the target cannot be loaded or has no entrypoint
        """


class PythonFileLoader(ModuleLoader):
    """Loads a .py file into a fresh registry inside this process."""

    async def discover(
        self, target: DiscoveryTarget, options: DiscoveryOptions
    ) -> DiscoveredMetadata:
        try:
            # user code may block for a while at import time
            metadata = await asyncio.to_thread(
                discover_entrypoint,
                file_path=target.file_path,
                function_name=options.function_name,
            )
        except Exception as e:
            raise DiscoveryError(
                f"Failed to discover entrypoint in {target.file_path}: "
                f"{type(e).__name__}: {e}"
            ) from e
        return {"function_name": metadata["name"], "params": metadata["params"]}


class SubcommandLoader(ModuleLoader):
    """Runs a discovery command and reads its `LMNR_METADATA:` line."""

    def build_command(
        self, target: DiscoveryTarget, options: DiscoveryOptions
    ) -> list[str]:
        if target.kind == MODULE_TARGET:
            command = [
                options.python_executable,
                "-m",
                "rollout_dev.cli",
                "discover",
                "--module",
                target.module_path,
            ]
        else:
            base = (
                shlex.split(options.discover_command)
                if options.discover_command
                else list(DEFAULT_JS_DISCOVER_COMMAND)
            )
            command = [*base, "--file", target.file_path]
            for package in options.external_packages or []:
                command += ["--external-package", package]
            for skipped in options.dynamic_imports_to_skip or []:
                command += ["--dynamic-import-to-skip", skipped]
        if options.function_name:
            command += ["--function", options.function_name]
        return command

    async def discover(
        self, target: DiscoveryTarget, options: DiscoveryOptions
    ) -> DiscoveredMetadata:
        command = self.build_command(target, options)
        logger.debug(f"Running discovery command: {shlex.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DiscoveryError(f"Failed to run '{command[0]}': {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=options.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise DiscoveryError(
                f"Discovery for {target.display_name} timed out after {options.timeout:.0f}s"
            )

        if process.returncode != 0:
            raise DiscoveryError(
                f"Discovery command failed with code {process.returncode}: "
                f"{_error_message(stderr.decode('utf-8', errors='replace'))}"
            )

        return _to_discovered(
            extract_metadata_from_stdout(stdout.decode("utf-8", errors="replace"))
        )


def _error_message(stderr: str) -> str:
    # `rollout-dev discover` reports failures as a JSON line on stderr
    for line in reversed(stderr.strip().splitlines()):
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and "error" in payload:
            return str(payload["error"])
    return stderr.strip()


class FallbackLoader(ModuleLoader):
    async def discover(
        self, target: DiscoveryTarget, options: DiscoveryOptions
    ) -> DiscoveredMetadata:
        path = target.file_path or ""
        base_name = os.path.splitext(os.path.basename(path))[0]
        logger.warning(f"No metadata discovery available for {target.kind or path} files")
        return {"function_name": options.function_name or base_name, "params": []}


_subcommand_loader = SubcommandLoader()

LOADERS: dict[str, ModuleLoader] = {
    MODULE_TARGET: _subcommand_loader,
    ".py": PythonFileLoader(),
    **{ext: _subcommand_loader for ext in TS_JS_EXTENSIONS},
}

_fallback_loader = FallbackLoader()


def get_loader(target: DiscoveryTarget) -> ModuleLoader:
    return LOADERS.get(target.kind, _fallback_loader)


def supports_discovery(target: DiscoveryTarget) -> bool:
    return target.kind in LOADERS


async def discover_function_metadata(
    target: DiscoveryTarget, options: DiscoveryOptions | None = None
) -> DiscoveredMetadata:
    """
    Discover the entrypoint name and parameters of a rollout target.

    Raises:
        DiscoveryError: If discovery applies to the target kind and fails
    """
    options = options or DiscoveryOptions()
    loader = get_loader(target)
    logger.debug(
        f"Discovering metadata for {target.display_name} "
        f"with {type(loader).__name__}"
    )
    return await loader.discover(target, options)
