import datetime
import dataclasses
import dotenv
import enum
import inspect
import json
import orjson
import os
import pydantic
import re
import typing
import uuid

DEFAULT_BASE_URL = "https://api.lmnr.ai"
DEFAULT_FRONTEND_URL = "https://www.laminar.sh"
DEFAULT_LOCAL_FRONTEND_PORT = 5667
DEFAULT_HTTP_PORT = 443
DEFAULT_GRPC_PORT = 8443


def is_async(func: typing.Callable) -> bool:
    # `__wrapped__` is set automatically by `functools.wraps` and
    # `functools.update_wrapper`
    # so we can use it to get the original function
    while hasattr(func, "__wrapped__"):
        func = func.__wrapped__

    if not inspect.isfunction(func):
        return False

    if inspect.iscoroutinefunction(func):
        return True

    # Fallback: check if the function's code object contains 'async'.
    # This is for cases when a decorator (not ours) did not properly use
    # `functools.wraps` or `functools.update_wrapper`
    return (func.__code__.co_flags & inspect.CO_COROUTINE) != 0


def is_async_iterator(o: typing.Any) -> bool:
    return hasattr(o, "__aiter__") and hasattr(o, "__anext__")


def is_iterator(o: typing.Any) -> bool:
    return hasattr(o, "__iter__") and hasattr(o, "__next__")


def serialize(obj: typing.Any) -> typing.Any:
    def serialize_inner(o: typing.Any):
        if isinstance(o, (datetime.datetime, datetime.date)):
            return o.isoformat()
        elif o is None:
            return None
        elif isinstance(o, (int, float, str, bool)):
            return o
        elif isinstance(o, uuid.UUID):
            return str(o)
        elif isinstance(o, enum.Enum):
            return o.value
        elif dataclasses.is_dataclass(o) and not isinstance(o, type):
            return serialize_inner(dataclasses.asdict(o))
        elif isinstance(o, bytes):
            return o.decode("utf-8", errors="replace")
        elif isinstance(o, pydantic.BaseModel):
            return serialize_inner(o.model_dump())
        elif isinstance(o, (tuple, set, frozenset, list)):
            return [serialize_inner(item) for item in o]
        elif isinstance(o, dict):
            return {str(serialize_inner(k)): serialize_inner(v) for k, v in o.items()}

        return str(o)

    return serialize_inner(obj)


def json_dumps(data: typing.Any) -> str:
    return orjson.dumps(serialize(data)).decode("utf-8")


def try_parse_json(value: typing.Any) -> typing.Any:
    """
    Try to parse a value as JSON if it's a string.

    Args:
        value: Value to parse

    Returns:
        Parsed value if it was JSON string, otherwise original value
    """
    if isinstance(value, str):
        try:
            return json.loads(value)
        except (json.JSONDecodeError, ValueError):
            return value
    return value


def from_env(key: str) -> str | None:
    if val := os.getenv(key):
        return val
    dotenv_path = dotenv.find_dotenv(usecwd=True)
    # use DotEnv directly so we can set verbose to False
    return dotenv.main.DotEnv(dotenv_path, verbose=False, encoding="utf-8").get(key)


def split_base_url_port(base_url: str) -> tuple[str, int | None]:
    """Split a trailing `:port` off a base URL.

    Returns:
        tuple[str, int | None]: URL without the port suffix and the port, if any
    """
    base_url = base_url.rstrip("/")
    if match := re.search(r":(\d{1,5})$", base_url):
        return base_url[: -len(match.group(0))], int(match.group(1))
    return base_url, None


def get_frontend_url(base_url: str | None = None, frontend_port: int | None = None) -> str:
    url = base_url or DEFAULT_BASE_URL
    if url.rstrip("/") == DEFAULT_BASE_URL:
        url = DEFAULT_FRONTEND_URL
    url = url.rstrip("/")

    if re.search(r"localhost|127\.0\.0\.1", url):
        url, port_in_url = split_base_url_port(url)
        port = frontend_port or port_in_url or DEFAULT_LOCAL_FRONTEND_PORT
        return f"{url}:{port}"

    return url
