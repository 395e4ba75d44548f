"""
Discover rollout function metadata.

Implements `rollout-dev discover`, which loads a Python file or module,
picks the rollout entrypoint, and prints its signature as a single
`LMNR_METADATA:` line. Other tooling (and the dev loop, for module targets)
reads that line from stdout.
"""

import ast
import dataclasses
import inspect
import json
import sys
import types
import typing
from argparse import Namespace
from typing import Any, Callable

import pydantic
from typing_extensions import is_typeddict

from rollout_dev.sdk.registry import EntrypointRegistry
from rollout_dev.sdk.rollout.types import FunctionMetadata, RolloutParam

METADATA_PROTOCOL_PREFIX = "LMNR_METADATA:"

_TYPE_MAPPING = {
    "str": "string",
    "string": "string",
    "int": "number",
    "float": "number",
    "number": "number",
    "bool": "boolean",
    "boolean": "boolean",
    "list": "array",
    "List": "array",
    "tuple": "array",
    "Tuple": "array",
    "set": "array",
    "Sequence": "array",
    "array": "array",
    "dict": "object",
    "Dict": "object",
    "Mapping": "object",
    "object": "object",
}


def python_type_to_json_type(annotation: Any) -> str:
    """
    Convert a Python type annotation to a JSON-compatible type string.

    Args:
        annotation: Python type annotation, or its source text

    Returns:
        str: "string", "number", "boolean", "array", "object", or "any"
    """
    if annotation is inspect.Parameter.empty or annotation is None:
        return "any"

    # source text, e.g. from `from __future__ import annotations` or ast
    if isinstance(annotation, str):
        text = annotation.strip().strip("'\"")
        # Optional[X] / X | None -> X
        if text.startswith("Optional[") and text.endswith("]"):
            return python_type_to_json_type(text[len("Optional[") : -1])
        if "|" in text:
            for part in text.split("|"):
                if part.strip() != "None":
                    return python_type_to_json_type(part)
            return "any"
        base = text.split("[", 1)[0].split(".")[-1]
        if base in _TYPE_MAPPING:
            return _TYPE_MAPPING[base]
        if base.lower() in _TYPE_MAPPING:
            return _TYPE_MAPPING[base.lower()]
        return "any"

    origin = typing.get_origin(annotation)
    if origin is not None:
        if origin in (typing.Union, types.UnionType):
            for arg in typing.get_args(annotation):
                if arg is not type(None):
                    return python_type_to_json_type(arg)
            return "any"
        if origin is typing.Literal:
            args = typing.get_args(annotation)
            return python_type_to_json_type(type(args[0])) if args else "any"
        return python_type_to_json_type(getattr(origin, "__name__", str(origin)))

    if is_typeddict(annotation) or _is_model(annotation):
        return "object"

    return python_type_to_json_type(getattr(annotation, "__name__", str(annotation)))


def _is_model(annotation: Any) -> bool:
    if not isinstance(annotation, type):
        return False
    return dataclasses.is_dataclass(annotation) or issubclass(
        annotation, pydantic.BaseModel
    )


def nested_params(annotation: Any) -> list[RolloutParam] | None:
    """Fields of a TypedDict, dataclass, or pydantic model parameter."""
    if isinstance(annotation, str) or annotation is inspect.Parameter.empty:
        return None

    fields: list[tuple[str, Any, bool]] = []
    if is_typeddict(annotation):
        hints = typing.get_type_hints(annotation)
        required = getattr(annotation, "__required_keys__", frozenset(hints))
        fields = [(name, hint, name in required) for name, hint in hints.items()]
    elif isinstance(annotation, type) and issubclass(annotation, pydantic.BaseModel):
        fields = [
            (name, field.annotation, field.is_required())
            for name, field in annotation.model_fields.items()
        ]
    elif isinstance(annotation, type) and dataclasses.is_dataclass(annotation):
        hints = typing.get_type_hints(annotation)
        fields = [
            (
                f.name,
                hints.get(f.name, f.type),
                f.default is dataclasses.MISSING
                and f.default_factory is dataclasses.MISSING,
            )
            for f in dataclasses.fields(annotation)
        ]
    else:
        return None

    return [
        {"name": name, "type": python_type_to_json_type(hint), "required": required}
        for name, hint, required in fields
    ]


def extract_function_metadata(
    func: Callable,
    name: str | None = None,
    export_name: str | None = None,
) -> FunctionMetadata:
    """
    Extract the parameter list of a function.

    Args:
        func: Function to inspect; decorator wrappers are unwrapped
        name: Registered entrypoint name, defaults to the function name
        export_name: Module attribute the function is bound to

    Returns:
        FunctionMetadata: name, export_name, and ordered params
    """
    sig = inspect.signature(func)
    try:
        hints = typing.get_type_hints(inspect.unwrap(func))
    except Exception:
        # unresolvable forward references; fall back to raw annotations
        hints = {}

    params: list[RolloutParam] = []
    for param_name, param in sig.parameters.items():
        if param_name in ("self", "cls"):
            continue
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue

        annotation = hints.get(param_name, param.annotation)
        param_info: RolloutParam = {
            "name": param_name,
            "type": python_type_to_json_type(annotation),
            "required": param.default is inspect.Parameter.empty,
        }
        if param.default is not inspect.Parameter.empty:
            param_info["default"] = repr(param.default)
        if nested := nested_params(annotation):
            param_info["nested"] = nested
        params.append(param_info)

    func_name = name or getattr(func, "__name__", "unknown")
    return {
        "name": func_name,
        "export_name": export_name or getattr(func, "__name__", func_name),
        "params": params,
    }


def static_parameter_types(source: str) -> dict[str, dict[str, str]]:
    """
    Read parameter annotations straight from source, without importing it.

    Returns:
        dict[str, dict[str, str]]: function name -> parameter -> JSON type
    """
    tree = ast.parse(source)
    result: dict[str, dict[str, str]] = {}
    for node in ast.walk(tree):
        if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            continue
        args = node.args
        param_types: dict[str, str] = {}
        for arg in [*args.posonlyargs, *args.args, *args.kwonlyargs]:
            if arg.annotation is not None:
                param_types[arg.arg] = python_type_to_json_type(ast.unparse(arg.annotation))
        result[node.name] = param_types
    return result


def merge_static_types(
    metadata: FunctionMetadata, static_types: dict[str, dict[str, str]]
) -> FunctionMetadata:
    """Fill in "any" parameter types from the static analysis of the source."""
    param_types = static_types.get(metadata["export_name"]) or static_types.get(
        metadata["name"], {}
    )
    for param in metadata["params"]:
        static_type = param_types.get(param["name"], "any")
        if param.get("type", "any") == "any" and static_type != "any":
            param["type"] = static_type
    return metadata


def discover_entrypoint(
    file_path: str | None = None,
    module_path: str | None = None,
    function_name: str | None = None,
) -> FunctionMetadata:
    """
    Load the target into a fresh registry and describe the selected entrypoint.

    Raises:
        ValueError: If neither target is given or no entrypoint can be selected
    """
    registry = EntrypointRegistry()
    loaded = None
    if file_path:
        loaded = registry.load_file(file_path)
    elif module_path:
        registry.load_module(module_path)
    else:
        raise ValueError("Either --file or --module must be provided")

    try:
        entrypoint = registry.select(function_name)
        metadata = extract_function_metadata(
            entrypoint.func, entrypoint.name, entrypoint.export_name
        )
    finally:
        # file loads get a unique name each time; only the metadata is kept
        if loaded is not None:
            sys.modules.pop(loaded.__name__, None)

    if file_path:
        with open(file_path, encoding="utf-8") as f:
            source = f.read()
        try:
            metadata = merge_static_types(metadata, static_parameter_types(source))
        except SyntaxError:
            pass
    return metadata


def run_discover(args: Namespace) -> None:
    """
    Execute the discover command.

    Prints `LMNR_METADATA:{...}` on success. On failure prints a JSON error
    object to stderr and exits with status 1.
    """
    try:
        metadata = discover_entrypoint(
            file_path=args.file,
            module_path=args.module,
            function_name=args.function,
        )
    except Exception as e:
        print(json.dumps({"error": f"{type(e).__name__}: {e}"}), file=sys.stderr)
        sys.exit(1)

    print(METADATA_PROTOCOL_PREFIX + json.dumps(metadata), flush=True)
    sys.exit(0)
