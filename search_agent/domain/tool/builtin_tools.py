"""
Built-in tools: web search, image search, weather and calculator.

Each tool is an async function over a JSON-like argument dict. Failures are
raised as exceptions; the tool executor turns them into ``execution_failed``.
"""

from typing import Any, Dict, List, Optional, Callable
from datetime import datetime, timezone
import ast
import asyncio
import math
import operator
import httpx
import structlog

from search_agent.domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)

GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
UNSPLASH_SEARCH_URL = "https://api.unsplash.com/search/photos"
GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
HTTP_TIMEOUT_SECONDS = 8.0

WEATHER_CONDITIONS: Dict[int, str] = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Depositing rime fog",
    51: "Light drizzle",
    61: "Rain",
    71: "Snowfall",
    80: "Rain showers",
    95: "Thunderstorm",
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


WEB_SEARCH_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "minLength": 1, "description": "The search query"},
        "num_results": {
            "type": "integer", "minimum": 1, "maximum": 10, "default": 5,
            "description": "Number of results to return"
        }
    },
    "required": ["query"],
    "additionalProperties": False
}

WEB_SEARCH_RESULT_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {"type": "string"},
        "results": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "url": {"type": "string"},
                    "snippet": {"type": "string"}
                },
                "required": ["url"]
            }
        }
    },
    "required": ["query", "results"]
}

IMAGE_SEARCH_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "minLength": 1, "description": "The image search query"},
        "count": {
            "type": "integer", "minimum": 1, "maximum": 10, "default": 4,
            "description": "Number of images to return"
        }
    },
    "required": ["query"],
    "additionalProperties": False
}

IMAGE_SEARCH_RESULT_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {"type": "string"},
        "images": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"url": {"type": "string"}},
                "required": ["url"]
            }
        }
    },
    "required": ["query", "images"]
}

WEATHER_SCHEMA = {
    "type": "object",
    "properties": {
        "location": {
            "type": "string", "minLength": 1,
            "description": "City name or location (e.g., London, New York, Delhi)"
        },
        "units": {"type": "string", "enum": ["celsius", "fahrenheit"], "default": "celsius"}
    },
    "required": ["location"],
    "additionalProperties": False
}

WEATHER_RESULT_SCHEMA = {
    "type": "object",
    "properties": {
        "location": {"type": "string"},
        "temperature": {"type": "number"},
        "unit": {"type": "string"},
        "condition": {"type": "string"}
    },
    "required": ["location", "temperature", "unit", "condition"]
}

CALCULATOR_SCHEMA = {
    "type": "object",
    "properties": {
        "expression": {
            "type": "string", "minLength": 1,
            "description": 'Mathematical expression (e.g., "2 + 2", "sqrt(16)", "log(100, 10)")'
        }
    },
    "required": ["expression"],
    "additionalProperties": False
}

CALCULATOR_RESULT_SCHEMA = {
    "type": "object",
    "properties": {
        "expression": {"type": "string"},
        "result": {"type": "number"}
    },
    "required": ["expression", "result"]
}


class SearchTools:
    """HTTP-backed tools sharing one client and the search credentials"""

    def __init__(
        self,
        search_api_key: str,
        search_engine_id: str,
        unsplash_access_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.search_api_key = search_api_key
        self.search_engine_id = search_engine_id
        self.unsplash_access_key = unsplash_access_key
        self.http_client = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def web_search(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        query = arguments["query"]
        num_results = arguments.get("num_results", 5)

        response = await self.http_client.get(
            GOOGLE_SEARCH_URL,
            params={
                "q": query,
                "key": self.search_api_key,
                "cx": self.search_engine_id,
                "num": num_results
            }
        )
        if response.status_code != 200:
            raise RuntimeError(f"Google API Error: {response.status_code}")

        items = response.json().get("items") or []
        results = [
            {
                "title": item.get("title", ""),
                "url": item["link"],
                "snippet": item.get("snippet", "")
            }
            for item in items
            if item.get("link")
        ]
        return {
            "source": "Google Search",
            "query": query,
            "results": results,
            "timestamp": _timestamp()
        }

    async def image_search(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        query = arguments["query"]
        count = arguments.get("count", 4)

        # Google image search first, then Unsplash, then placeholders
        response = await self.http_client.get(
            GOOGLE_SEARCH_URL,
            params={
                "q": query,
                "searchType": "image",
                "num": count,
                "key": self.search_api_key,
                "cx": self.search_engine_id
            }
        )
        if response.status_code == 200:
            items = response.json().get("items") or []
            if items:
                images = [
                    {
                        "url": item["link"],
                        "thumbnail": (item.get("image") or {}).get("thumbnailLink"),
                        "title": item.get("title") or f"{query} - Image {i + 1}",
                        "source": "Google Images"
                    }
                    for i, item in enumerate(items)
                    if item.get("link")
                ]
                return {"query": query, "images": images, "timestamp": _timestamp()}

        if self.unsplash_access_key:
            response = await self.http_client.get(
                UNSPLASH_SEARCH_URL,
                params={"query": query, "per_page": count, "client_id": self.unsplash_access_key}
            )
            if response.status_code == 200:
                items = response.json().get("results") or []
                if items:
                    images = [
                        {
                            "url": item["urls"]["regular"],
                            "thumbnail": item["urls"].get("thumb"),
                            "title": item.get("description") or f"{query} - Image {i + 1}",
                            "source": "Unsplash"
                        }
                        for i, item in enumerate(items)
                        if item.get("urls", {}).get("regular")
                    ]
                    return {"query": query, "images": images, "timestamp": _timestamp()}

        logger.info("Image search fell back to placeholders", query=query)
        images = [
            {
                "url": f"https://picsum.photos/seed/{query}-{i}/600/400",
                "thumbnail": f"https://picsum.photos/seed/{query}-{i}/300/200",
                "title": f"{query} - Image {i + 1}",
                "source": "Placeholder (Picsum)"
            }
            for i in range(count)
        ]
        return {"query": query, "images": images, "timestamp": _timestamp()}

    async def weather(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        location = arguments["location"]
        units = arguments.get("units", "celsius")

        geo = await self.http_client.get(GEOCODING_URL, params={"name": location, "count": 1})
        geo.raise_for_status()
        places = geo.json().get("results") or []
        if not places:
            raise LookupError(f"Location not found: {location}")

        place = places[0]
        forecast = await self.http_client.get(
            FORECAST_URL,
            params={
                "latitude": place["latitude"],
                "longitude": place["longitude"],
                "current_weather": "true",
                "temperature_unit": units,
                "windspeed_unit": "kmh"
            }
        )
        forecast.raise_for_status()
        current = forecast.json().get("current_weather")
        if not current:
            raise RuntimeError("Weather data unavailable")

        name = ", ".join(p for p in (place.get("name"), place.get("country")) if p)
        return {
            "location": name or location,
            "temperature": current["temperature"],
            "unit": units,
            "condition": WEATHER_CONDITIONS.get(current.get("weathercode"), "Unknown"),
            "wind_speed": current.get("windspeed"),
            "timestamp": _timestamp()
        }


# Keeps ** from allocating enormous integers
MAX_EXPONENT = 10000
# Largest integer result, comfortably below the int-to-str digit limit
MAX_RESULT_BITS = 4096
MAX_FACTORIAL = 450


def _factorial(value: Any) -> int:
    if value > MAX_FACTORIAL:
        raise ValueError(f"factorial argument above {MAX_FACTORIAL}")
    return math.factorial(value)


def _bounded(value: Any) -> Any:
    if isinstance(value, int) and value.bit_length() > MAX_RESULT_BITS:
        raise ValueError("Result too large")
    return value


_BINARY_OPERATORS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPERATORS: Dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_FUNCTIONS: Dict[str, Callable[..., float]] = {
    "sqrt": math.sqrt, "cbrt": lambda x: math.copysign(abs(x) ** (1 / 3), x),
    "abs": abs, "round": round, "floor": math.floor, "ceil": math.ceil,
    "exp": math.exp, "ln": math.log, "log": math.log, "log10": math.log10, "log2": math.log2,
    "sin": math.sin, "cos": math.cos, "tan": math.tan,
    "asin": math.asin, "acos": math.acos, "atan": math.atan, "atan2": math.atan2,
    "sinh": math.sinh, "cosh": math.cosh, "tanh": math.tanh,
    "radians": math.radians, "degrees": math.degrees,
    "factorial": _factorial, "min": min, "max": max, "hypot": math.hypot,
}

_CONSTANTS: Dict[str, float] = {"pi": math.pi, "e": math.e, "tau": math.tau, "inf": math.inf}


def evaluate_expression(expression: str) -> float:
    """Evaluate an arithmetic expression without exposing eval()"""

    tree = ast.parse(expression.replace("^", "**"), mode="eval")
    return _evaluate(tree.body)


def _evaluate(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return _bounded(node.value)
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        left, right = _evaluate(node.left), _evaluate(node.right)
        if isinstance(node.op, ast.Pow):
            if abs(right) > MAX_EXPONENT:
                raise ValueError("Exponent too large")
            if isinstance(left, int) and isinstance(right, int) and right > 0 \
                    and abs(left).bit_length() * right > MAX_RESULT_BITS:
                raise ValueError("Result too large")
        return _bounded(_BINARY_OPERATORS[type(node.op)](left, right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate(node.operand))
    if isinstance(node, ast.Name) and node.id in _CONSTANTS:
        return _CONSTANTS[node.id]
    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id in _FUNCTIONS
        and not node.keywords
    ):
        return _bounded(_FUNCTIONS[node.func.id](*[_evaluate(arg) for arg in node.args]))
    raise ValueError(f"Unsupported expression element: {ast.dump(node)[:60]}")


async def calculator(arguments: Dict[str, Any]) -> Dict[str, Any]:
    expression = arguments["expression"]
    try:
        # Off the event loop so the tool timeout can fire
        result = await asyncio.to_thread(evaluate_expression, expression)
    except (SyntaxError, ValueError, TypeError, ZeroDivisionError, OverflowError) as e:
        raise ValueError(f"Invalid or unsupported mathematical expression: {e}") from e
    return {"expression": expression, "result": result, "timestamp": _timestamp()}


def _web_sources(result: Dict[str, Any]) -> List[str]:
    return [item["url"] for item in result.get("results", [])]


def _image_sources(result: Dict[str, Any]) -> List[str]:
    return [item["url"] for item in result.get("images", [])]


def register_builtin_tools(
    registry: ToolRegistry,
    search_tools: SearchTools,
    timeout: Optional[float] = None
) -> ToolRegistry:
    """Register the four built-in tools on a registry"""

    registry.register(
        name="web_search",
        description="Search the web using Google Custom Search for real-time and recent information.",
        input_schema=WEB_SEARCH_SCHEMA,
        result_schema=WEB_SEARCH_RESULT_SCHEMA,
        executor=search_tools.web_search,
        timeout=timeout,
        category="search",
        query_field="query",
        sources=_web_sources
    )
    registry.register(
        name="image_search",
        description="Search for images matching a query.",
        input_schema=IMAGE_SEARCH_SCHEMA,
        result_schema=IMAGE_SEARCH_RESULT_SCHEMA,
        executor=search_tools.image_search,
        timeout=timeout,
        category="search",
        query_field="query",
        sources=_image_sources
    )
    registry.register(
        name="weather",
        description="Get current weather information for a city or location.",
        input_schema=WEATHER_SCHEMA,
        result_schema=WEATHER_RESULT_SCHEMA,
        executor=search_tools.weather,
        timeout=timeout,
        category="information",
        query_field="location"
    )
    registry.register(
        name="calculator",
        description=(
            "Evaluate mathematical expressions: arithmetic, powers, trigonometry, "
            "logarithms and other common functions."
        ),
        input_schema=CALCULATOR_SCHEMA,
        result_schema=CALCULATOR_RESULT_SCHEMA,
        executor=calculator,
        timeout=timeout,
        category="math",
        query_field="expression"
    )
    return registry
