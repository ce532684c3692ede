"""Tool registry and the built-in demo tools.

Handlers are synchronous functions of their params. They either return a
JSON-serializable value or raise `ToolExecutionError`; the registry itself
never raises for a missing tool and returns an `UnknownTool` value instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from flowstudio.logging import get_logger
from flowstudio.service.errors import ToolExecutionError, UnknownTool
from flowstudio.service.sandbox import safe_eval_expr

logger = get_logger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Any]


class CalcArgs(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    expression: str = Field(
        "0",
        description="math expression, e.g. '2+2*3'",
    )


class WeatherArgs(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    city: str = "Delhi"


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: ToolHandler

    def json_schema(self) -> Dict[str, Any]:
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
        return schema

    def openai_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.json_schema(),
            },
        }


_WEATHER_TABLE: Dict[str, Dict[str, Any]] = {
    "Delhi": {"tempC": 32, "condition": "Cloudy"},
    "Mumbai": {"tempC": 29, "condition": "Humid"},
    "Bengaluru": {"tempC": 24, "condition": "Light Rain"},
}
_WEATHER_DEFAULT: Dict[str, Any] = {"tempC": 28, "condition": "Clear"}


def tool_calc(params: Dict[str, Any]) -> Dict[str, Union[int, float]]:
    args = _parse_args("calc", CalcArgs, params)
    try:
        return {"result": safe_eval_expr(args.expression)}
    except ValueError as exc:
        raise ToolExecutionError("calc", str(exc)) from exc


def tool_weather(params: Dict[str, Any]) -> Dict[str, Any]:
    args = _parse_args("weather", WeatherArgs, params)
    return dict(_WEATHER_TABLE.get(args.city.strip(), _WEATHER_DEFAULT))


def _parse_args(
    tool_name: str, model: Type[BaseModel], params: Optional[Dict[str, Any]]
) -> Any:
    try:
        return model.model_validate(params or {})
    except PydanticValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'params'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ToolExecutionError(tool_name, f"invalid arguments: {errors}") from exc


class ToolRegistry:
    """Name to handler mapping consulted by the dispatcher and the planner."""

    def __init__(self, specs: Optional[Iterable[ToolSpec]] = None) -> None:
        self._specs: Dict[str, ToolSpec] = {}
        for spec in specs or ():
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"tool {spec.name} already registered")
        self._specs[spec.name] = spec

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def names(self) -> List[str]:
        return list(self._specs)

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._specs.get(name)

    def invoke(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Run a tool by exact name.

        Returns the handler's value, or `UnknownTool` when no handler is
        registered under `name`. Handler failures propagate as
        `ToolExecutionError`.
        """
        spec = self._specs.get(name)
        if spec is None:
            logger.warning("tool_unknown", tool=name)
            return UnknownTool(name)
        return spec.handler(dict(params or {}))

    def resolve(self, names: Optional[Iterable[str]] = None) -> List[ToolSpec]:
        """Registered specs for `names`, or every spec when none are requested."""
        requested = [n for n in (names or []) if n]
        if not requested:
            return list(self._specs.values())
        seen: List[str] = []
        for name in requested:
            if name in self._specs and name not in seen:
                seen.append(name)
        return [self._specs[name] for name in seen]

    def schemas(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        return [
            {"name": spec.name, "description": spec.description, "parameters": spec.json_schema()}
            for spec in self.resolve(names)
        ]

    def openai_tools(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        return [spec.openai_tool() for spec in self.resolve(names)]


def build_default_registry() -> ToolRegistry:
    return ToolRegistry(
        [
            ToolSpec(
                name="calc",
                description="Safely evaluate a simple math expression.",
                args_model=CalcArgs,
                handler=tool_calc,
            ),
            ToolSpec(
                name="weather",
                description="Return a fake weather snapshot for a city.",
                args_model=WeatherArgs,
                handler=tool_weather,
            ),
        ]
    )
