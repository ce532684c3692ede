import pytest

from flowstudio.service.errors import ToolExecutionError, UnknownTool
from flowstudio.service.tools import (
    CalcArgs,
    ToolRegistry,
    ToolSpec,
    WeatherArgs,
    build_default_registry,
)


@pytest.fixture
def registry():
    return build_default_registry()


def test_calc_is_deterministic(registry):
    first = registry.invoke("calc", {"expression": "2+3*4"})
    second = registry.invoke("calc", {"expression": "2+3*4"})

    assert first == {"result": 14}
    assert first == second


def test_calc_trigonometry(registry):
    result = registry.invoke("calc", {"expression": "sin(PI/4)**2"})

    assert result["result"] == pytest.approx(0.5)


def test_calc_defaults_to_zero(registry):
    assert registry.invoke("calc", {}) == {"result": 0}


def test_calc_rejects_invalid_chars(registry):
    with pytest.raises(ToolExecutionError) as excinfo:
        registry.invoke("calc", {"expression": "import os; os.system('x')"})

    assert excinfo.value.tool_name == "calc"
    assert "invalid chars" in excinfo.value.message


def test_calc_rejects_non_string_expression(registry):
    with pytest.raises(ToolExecutionError, match="invalid arguments"):
        registry.invoke("calc", {"expression": ["1"]})


def test_numeric_params_are_coerced_to_strings(registry):
    assert registry.invoke("calc", {"expression": 14}) == {"result": 14}
    assert registry.invoke("calc", {"expression": 2.5}) == {"result": 2.5}
    assert registry.invoke("weather", {"city": 42}) == {"tempC": 28, "condition": "Clear"}


def test_weather_lookup_and_default(registry):
    assert registry.invoke("weather", {"city": "Delhi"}) == {"tempC": 32, "condition": "Cloudy"}
    assert registry.invoke("weather", {"city": "Mumbai"}) == {"tempC": 29, "condition": "Humid"}
    assert registry.invoke("weather", {"city": "Atlantis"}) == {"tempC": 28, "condition": "Clear"}
    assert registry.invoke("weather", {}) == {"tempC": 32, "condition": "Cloudy"}


def test_weather_results_are_copies(registry):
    result = registry.invoke("weather", {"city": "Delhi"})
    result["tempC"] = 0

    assert registry.invoke("weather", {"city": "Delhi"})["tempC"] == 32


def test_unknown_tool_is_a_value(registry):
    result = registry.invoke("teleport", {"to": "Mars"})

    assert isinstance(result, UnknownTool)
    assert result.name == "teleport"
    assert result.to_result() == {"error": "Unknown tool teleport"}


def test_schemas_intersect_with_registry(registry):
    names = [schema["name"] for schema in registry.schemas(["weather", "missing", "weather"])]

    assert names == ["weather"]
    assert [s["name"] for s in registry.schemas()] == ["calc", "weather"]
    assert [s["name"] for s in registry.schemas([])] == ["calc", "weather"]


def test_openai_tool_definitions_come_from_arg_models(registry):
    tools = registry.openai_tools(["calc"])

    assert tools == [
        {
            "type": "function",
            "function": {
                "name": "calc",
                "description": "Safely evaluate a simple math expression.",
                "parameters": tools[0]["function"]["parameters"],
            },
        }
    ]
    parameters = tools[0]["function"]["parameters"]
    assert parameters["type"] == "object"
    assert set(parameters["properties"]) == {"expression"}
    assert "title" not in parameters


def test_duplicate_registration_is_rejected():
    spec = ToolSpec(name="echo", description="", args_model=CalcArgs, handler=lambda p: p)
    registry = ToolRegistry([spec])

    with pytest.raises(ValueError):
        registry.register(spec)
    assert "echo" in registry
    assert registry.names() == ["echo"]


def test_arg_models_apply_defaults():
    assert CalcArgs().expression == "0"
    assert WeatherArgs().city == "Delhi"
