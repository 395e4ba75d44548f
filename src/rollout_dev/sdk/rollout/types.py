from typing import Any, Literal, TypedDict

import orjson
from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import NotRequired


class LanguageModelTextBlock(TypedDict):
    type: Literal["text"]
    text: str


class LanguageModelToolDefinitionOverride(TypedDict):
    name: str
    description: NotRequired[str | None]
    parameters: NotRequired[dict[str, Any]]


class RolloutPathOverride(TypedDict):
    system: NotRequired[str | list[LanguageModelTextBlock]]
    tools: NotRequired[list[LanguageModelToolDefinitionOverride]]


class RolloutRunEventData(TypedDict):
    trace_id: NotRequired[str | None]
    path_to_count: NotRequired[dict[str, int]]
    args: dict[str, Any] | list[Any]
    overrides: NotRequired[dict[str, RolloutPathOverride] | None]


class RolloutHandshakeEventData(TypedDict):
    project_id: str
    session_id: str


class RolloutParam(TypedDict):
    name: str
    type: NotRequired[str]
    required: NotRequired[bool]
    nested: NotRequired[list["RolloutParam"]]
    default: NotRequired[str]


class FunctionMetadata(TypedDict):
    # Span name, e.g. from observe(name=...)
    name: str
    # Attribute name the callable is bound to in its module
    export_name: str
    params: list[RolloutParam]


class DiscoveredMetadata(TypedDict):
    function_name: str
    params: list[RolloutParam]


class CachedSpan(TypedDict):
    name: str
    input: Any
    output: str
    attributes: dict[str, Any]


class CacheMetadata(TypedDict):
    pathToCount: dict[str, int]
    overrides: NotRequired[dict[str, RolloutPathOverride] | None]


class CacheServerResponse(TypedDict):
    pathToCount: dict[str, int]
    overrides: NotRequired[dict[str, RolloutPathOverride] | None]
    span: NotRequired[CachedSpan]


SessionStatus = Literal["PENDING", "RUNNING", "FINISHED", "STOPPED"]


class WorkerConfig(BaseModel):
    """Configuration sent to a worker process as a single stdin line."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    file_path: str | None = Field(default=None, alias="filePath")
    module_path: str | None = Field(default=None, alias="modulePath")
    function_name: str | None = Field(default=None, alias="functionName")
    args: dict[str, Any] | list[Any] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    cache_server_port: int = Field(alias="cacheServerPort")
    base_url: str = Field(alias="baseUrl")
    project_api_key: str | None = Field(default=None, alias="projectApiKey")
    http_port: int = Field(alias="httpPort")
    grpc_port: int = Field(alias="grpcPort")
    external_packages: list[str] | None = Field(default=None, alias="externalPackages")
    dynamic_imports_to_skip: list[str] | None = Field(
        default=None, alias="dynamicImportsToSkip"
    )

    def to_json(self) -> str:
        return orjson.dumps(
            self.model_dump(by_alias=True, exclude_none=True, mode="json")
        ).decode("utf-8")

    @classmethod
    def from_json(cls, line: str | bytes) -> "WorkerConfig":
        return cls.model_validate(orjson.loads(line))
