"""
Line protocol between the orchestrator and a worker process.

stdin: exactly one line holding the JSON WorkerConfig.
stdout: frames are lines prefixed with WORKER_MESSAGE_PREFIX followed by a
JSON object with a "type" of "log", "result" or "error". Any other stdout
line is user output and is passed through untouched.
"""

import logging
import sys
import traceback
from typing import Any, Literal, TextIO, TypedDict

import orjson
from typing_extensions import NotRequired

from rollout_dev.sdk.utils import serialize

WORKER_MESSAGE_PREFIX = "__LMNR_WORKER__:"

LogLevel = Literal["debug", "info", "warn", "error"]


class LogFrame(TypedDict):
    type: Literal["log"]
    level: LogLevel
    message: str


class ResultFrame(TypedDict):
    type: Literal["result"]
    data: Any


class ErrorFrame(TypedDict):
    type: Literal["error"]
    error: str
    stack: NotRequired[str | None]


WorkerFrame = LogFrame | ResultFrame | ErrorFrame

_LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def log_level_for(frame_level: str) -> int:
    return _LOG_LEVELS.get(frame_level.lower(), logging.INFO)


def encode_frame(frame: WorkerFrame) -> str:
    return WORKER_MESSAGE_PREFIX + orjson.dumps(serialize(frame)).decode("utf-8")


def parse_frame(line: str) -> WorkerFrame | None:
    """
    Parse a stdout line into a frame.

    Returns:
        WorkerFrame | None: None if the line is not a frame at all

    Raises:
        ValueError: If the line has the frame prefix but an invalid body
    """
    if not line.startswith(WORKER_MESSAGE_PREFIX):
        return None
    payload = orjson.loads(line[len(WORKER_MESSAGE_PREFIX) :])
    if not isinstance(payload, dict) or payload.get("type") not in (
        "log",
        "result",
        "error",
    ):
        raise ValueError(f"Unknown worker frame: {line[:200]}")
    return payload


def send_frame(frame: WorkerFrame, stream: TextIO | None = None) -> None:
    stream = stream or sys.stdout
    stream.write(encode_frame(frame) + "\n")
    stream.flush()


def send_log(level: LogLevel, message: str, stream: TextIO | None = None) -> None:
    send_frame({"type": "log", "level": level, "message": message}, stream)


def send_result(data: Any, stream: TextIO | None = None) -> None:
    send_frame({"type": "result", "data": data}, stream)


def send_error(
    error: BaseException | str,
    stack: str | None = None,
    stream: TextIO | None = None,
) -> None:
    if isinstance(error, BaseException):
        message = f"{type(error).__name__}: {error}"
        if stack is None:
            stack = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
    else:
        message = error
    send_frame({"type": "error", "error": message, "stack": stack}, stream)
