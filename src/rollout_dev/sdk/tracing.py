"""
Worker-side tracing: an OpenTelemetry tracer provider that exports to the
backend, and the `observe` decorator that creates spans, tracks the span
path, and lets interceptors answer LLM calls.
"""

import functools
import inspect
import threading
import types
from contextvars import ContextVar
from typing import Any, Callable, Literal, TypeVar

import grpc
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.http import Compression as HTTPCompression
from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
    OTLPSpanExporter as HTTPOTLPSpanExporter,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace import Span

from rollout_dev.sdk.log import get_default_logger
from rollout_dev.sdk.registry import register_entrypoint
from rollout_dev.sdk.rollout.interceptor import LLMCall, run_interceptors
from rollout_dev.sdk.utils import (
    DEFAULT_BASE_URL,
    DEFAULT_GRPC_PORT,
    DEFAULT_HTTP_PORT,
    is_async,
    json_dumps,
    split_base_url_port,
)
from rollout_dev.version import PYTHON_VERSION, __version__

logger = get_default_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SPAN_INPUT = "lmnr.span.input"
SPAN_OUTPUT = "lmnr.span.output"
SPAN_TYPE = "lmnr.span.type"
SPAN_PATH = "lmnr.span.path"
SPAN_CACHED = "lmnr.span.cached"
SPAN_LANGUAGE_VERSION = "lmnr.span.language_version"
ASSOCIATION_PROPERTIES = "lmnr.association.properties"

TRACER_NAME = "rollout_dev.tracer"

_SPAN_PATH: ContextVar[tuple[str, ...]] = ContextVar(
    "__rollout_dev_span_path", default=()
)

_lock = threading.Lock()
_tracer_provider: TracerProvider | None = None
_association_properties: dict[str, Any] = {}


def create_span_exporter(
    base_url: str | None,
    project_api_key: str,
    http_port: int | None = None,
    grpc_port: int | None = None,
    force_http: bool = False,
    timeout_seconds: int = 30,
) -> SpanExporter:
    url, port_in_url = split_base_url_port(base_url or DEFAULT_BASE_URL)
    if force_http:
        port = http_port or port_in_url or DEFAULT_HTTP_PORT
        return HTTPOTLPSpanExporter(
            endpoint=f"{url}:{port}/v1/traces",
            headers={"Authorization": f"Bearer {project_api_key}"},
            compression=HTTPCompression.Gzip,
            timeout=timeout_seconds,
        )
    port = grpc_port or port_in_url or DEFAULT_GRPC_PORT
    return OTLPSpanExporter(
        endpoint=f"{url}:{port}",
        headers={"authorization": f"Bearer {project_api_key}"},
        compression=grpc.Compression.Gzip,
        timeout=timeout_seconds,
    )


def init_tracing(
    project_api_key: str | None,
    base_url: str | None = None,
    http_port: int | None = None,
    grpc_port: int | None = None,
    force_http: bool = False,
    disable_batch: bool = True,
    association_properties: dict[str, Any] | None = None,
    exporter: SpanExporter | None = None,
) -> bool:
    """
    Set up the tracer provider once per process.

    Without an API key (and no explicit exporter) spans are still created
    for path tracking but go nowhere.

    Returns:
        bool: True if this call initialized tracing, False if it already was
    """
    global _tracer_provider

    with _lock:
        if _tracer_provider is not None:
            return False

        if association_properties:
            _association_properties.update(association_properties)

        provider = TracerProvider(
            resource=Resource.create({"service.name": "rollout-dev-worker"})
        )
        if exporter is None and project_api_key:
            exporter = create_span_exporter(
                base_url, project_api_key, http_port, grpc_port, force_http
            )
        if exporter is not None:
            processor = (
                SimpleSpanProcessor(exporter)
                if disable_batch
                else BatchSpanProcessor(exporter)
            )
            provider.add_span_processor(processor)
        else:
            logger.debug("No project API key, spans will not be exported")

        _tracer_provider = provider
        return True


def is_tracing_initialized() -> bool:
    return _tracer_provider is not None


def flush() -> bool:
    provider = _tracer_provider
    if provider is None:
        return True
    return provider.force_flush()


def shutdown() -> None:
    global _tracer_provider
    with _lock:
        provider, _tracer_provider = _tracer_provider, None
        _association_properties.clear()
    if provider is not None:
        provider.shutdown()


def _get_tracer() -> trace.Tracer:
    provider = _tracer_provider
    if provider is None:
        return trace.NoOpTracer()
    return provider.get_tracer(TRACER_NAME, __version__)


def current_span_path() -> str:
    return ".".join(_SPAN_PATH.get())


def _span_attributes(span_type: str, path: tuple[str, ...]) -> dict[str, Any]:
    attributes: dict[str, Any] = {
        SPAN_TYPE: span_type,
        SPAN_PATH: list(path),
        SPAN_LANGUAGE_VERSION: f"python@{PYTHON_VERSION}",
    }
    for key, value in _association_properties.items():
        attributes[f"{ASSOCIATION_PROPERTIES}.{key}"] = value
    return attributes


def _process_input(
    span: Span, fn: Callable, args: tuple, kwargs: dict, ignore_input: bool
) -> None:
    if ignore_input:
        return
    try:
        bound = inspect.signature(fn).bind_partial(*args, **kwargs)
        span.set_attribute(SPAN_INPUT, json_dumps(dict(bound.arguments)))
    except Exception:
        logger.debug("Failed to process input, ignoring", exc_info=True)


def _process_output(span: Span, output: Any, ignore_output: bool) -> None:
    if ignore_output:
        return
    try:
        span.set_attribute(SPAN_OUTPUT, json_dumps(output))
    except Exception:
        logger.debug("Failed to process output, ignoring", exc_info=True)


def _intercept(
    span: Span, span_name: str, span_type: str, args: tuple, kwargs: dict
) -> Any:
    if span_type != "LLM":
        return None
    replay = run_interceptors(
        LLMCall(name=span_name, path=current_span_path(), args=args, kwargs=kwargs)
    )
    if replay is not None:
        span.set_attribute(SPAN_CACHED, True)
    return replay


def observe(
    *,
    name: str | None = None,
    span_type: Literal["DEFAULT", "LLM", "TOOL"] = "DEFAULT",
    ignore_input: bool = False,
    ignore_output: bool = False,
    rollout_entrypoint: bool = False,
) -> Callable[[F], F]:
    """Wrap a function in a span.

    Args:
        name (str | None, optional): Name of the span. Function name is used if\
            not specified. The name is also the span's segment in the span path.
        span_type (Literal["DEFAULT", "LLM", "TOOL"], optional): Type of the span.\
            Calls to "LLM" spans are offered to the registered interceptors first\
            and may be answered from recorded output without running.
        ignore_input (bool, optional): Do not record the arguments.
        ignore_output (bool, optional): Do not record the return value.
        rollout_entrypoint (bool, optional): Also register the wrapped function\
            as a rollout entrypoint under the span name.

    Returns:
        Callable: The decorator
    """

    def decorator(fn: F) -> F:
        span_name = name or fn.__name__

        if is_async(fn):

            @functools.wraps(fn)
            async def wrap(*args, **kwargs):
                path = _SPAN_PATH.get() + (span_name,)
                token = _SPAN_PATH.set(path)
                try:
                    with _get_tracer().start_as_current_span(
                        span_name, attributes=_span_attributes(span_type, path)
                    ) as span:
                        _process_input(span, fn, args, kwargs, ignore_input)
                        if replay := _intercept(span, span_name, span_type, args, kwargs):
                            _process_output(span, replay.output, ignore_output)
                            return replay.output
                        res = await fn(*args, **kwargs)
                        _process_output(span, res, ignore_output)
                        return res
                finally:
                    _SPAN_PATH.reset(token)

        else:

            @functools.wraps(fn)
            def wrap(*args, **kwargs):
                path = _SPAN_PATH.get() + (span_name,)
                token = _SPAN_PATH.set(path)
                try:
                    with _get_tracer().start_as_current_span(
                        span_name, attributes=_span_attributes(span_type, path)
                    ) as span:
                        _process_input(span, fn, args, kwargs, ignore_input)
                        if replay := _intercept(span, span_name, span_type, args, kwargs):
                            _process_output(span, replay.output, ignore_output)
                            return replay.output
                        res = fn(*args, **kwargs)
                        # generators are consumed after the span closes; record nothing
                        if not isinstance(
                            res, (types.GeneratorType, types.AsyncGeneratorType)
                        ):
                            _process_output(span, res, ignore_output)
                        return res
                finally:
                    _SPAN_PATH.reset(token)

        if rollout_entrypoint:
            register_entrypoint(span_name, wrap)
        return wrap

    return decorator
