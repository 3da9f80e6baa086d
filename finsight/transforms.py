"""
Pluggable post-processing of raw API payloads.

The pipeline knows nothing about payload shapes; it only looks up a
transform by key. Anything a transform raises because the payload had the
wrong shape (missing keys, wrong types, pydantic ValidationError) is
reported as MalformedResponseError.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel

from .errors import MalformedResponseError
from .schemas import (
    ChatCompletion,
    NewsArticle,
    SankeyData,
    SimulationRecord,
    TariffAlert,
)

logger = logging.getLogger("transforms")

Transform = Callable[[Any], Any]


class TransformRegistry:
    """Strategy map from transform key to function."""

    def __init__(self, transforms: Optional[Dict[str, Transform]] = None):
        self._transforms: Dict[str, Transform] = dict(transforms or {})

    def register(self, key: str, fn: Transform) -> None:
        if key in self._transforms:
            logger.debug(f"Replacing transform '{key}'")
        self._transforms[key] = fn

    def unregister(self, key: str) -> bool:
        return self._transforms.pop(key, None) is not None

    def apply(self, key: Optional[str], raw: Any) -> Any:
        """Run the transform for `key`; identity when none is registered."""
        if key is None:
            return raw
        fn = self._transforms.get(key)
        if fn is None:
            return raw
        try:
            return fn(raw)
        except (KeyError, TypeError, ValueError, IndexError, AttributeError) as e:
            raise MalformedResponseError(
                f"Payload did not match '{key}' shape: {e}"
            ) from e

    def keys(self) -> List[str]:
        return list(self._transforms.keys())

    def __contains__(self, key: str) -> bool:
        return key in self._transforms


def _validate_list(model: Type[BaseModel], items: Any) -> List[Dict[str, Any]]:
    if not isinstance(items, list):
        raise TypeError(f"expected a list, got {type(items).__name__}")
    return [model.model_validate(item).model_dump(mode="json") for item in items]


# =============================================================================
# Default transforms
# =============================================================================

def tariff_alerts(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    return _validate_list(TariffAlert, raw["alerts"])


def market_news(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    return _validate_list(NewsArticle, raw.get("articles") or [])


def simulation_inputs(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    return _validate_list(SimulationRecord, raw["inputs"])


def simulation_outputs(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    return _validate_list(SimulationRecord, raw["outputs"])


def simulation_comparisons(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    return _validate_list(SimulationRecord, raw["comparisons"])


def economic_simulation(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    return _validate_list(SimulationRecord, raw["results"])


def sankey_data(raw: Dict[str, Any]) -> Dict[str, Any]:
    return SankeyData.model_validate(raw).model_dump(mode="json")


def chat_completion(raw: Dict[str, Any]) -> str:
    """Content of the first choice."""
    completion = ChatCompletion.model_validate(raw)
    return completion.choices[0].message.content


DEFAULT_TRANSFORMS: Dict[str, Transform] = {
    "tariff_alerts": tariff_alerts,
    "market_news": market_news,
    "simulation_inputs": simulation_inputs,
    "simulation_outputs": simulation_outputs,
    "simulation_comparisons": simulation_comparisons,
    "economic_simulation": economic_simulation,
    "sankey_data": sankey_data,
    "chat_completion": chat_completion,
}


def default_registry() -> TransformRegistry:
    """A registry preloaded with the built-in transforms."""
    return TransformRegistry(DEFAULT_TRANSFORMS)
