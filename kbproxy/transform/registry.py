#!/usr/bin/env python3
"""Registry of transformer implementations keyed by their declared identifier."""
import importlib
from typing import Dict, Optional, Type

from ..core.exchange_log import ExchangeLogger
from .base import LoggingTransformer, RequestTransformer, TagTransformer
from .rule_filter import RuleFilterTransformer


class TransformerRegistry:
    """Maps ``transformer_id`` values to :class:`RequestTransformer` subclasses."""

    def __init__(self):
        self._classes: Dict[str, Type[RequestTransformer]] = {}

    def register(self, cls: Type[RequestTransformer]) -> Type[RequestTransformer]:
        """Register ``cls``; usable as a class decorator."""
        if not (isinstance(cls, type) and issubclass(cls, RequestTransformer)):
            raise TypeError(f"{cls!r} does not subclass RequestTransformer")
        transformer_id = getattr(cls, 'transformer_id', '')
        if not transformer_id:
            raise ValueError(f"{cls.__name__} does not declare a transformer_id")
        existing = self._classes.get(transformer_id)
        if existing is not None and existing is not cls:
            raise ValueError(f"Transformer id {transformer_id!r} already registered by {existing.__name__}")
        self._classes[transformer_id] = cls
        return cls

    def get(self, transformer_id: str) -> Optional[Type[RequestTransformer]]:
        return self._classes.get(transformer_id)

    def ids(self):
        return sorted(self._classes)

    def resolve(self, name: str) -> Type[RequestTransformer]:
        """Look up ``name`` by id, or import it when given as ``module:ClassName``."""
        cls = self._classes.get(name)
        if cls is not None:
            return cls
        if ':' not in name:
            raise KeyError(f"Unknown transformer {name!r}; known: {', '.join(self.ids())}")

        module_name, _, attr = name.partition(':')
        module = importlib.import_module(module_name)
        cls = getattr(module, attr, None)
        if cls is None:
            raise KeyError(f"{module_name} has no attribute {attr!r}")
        return self.register(cls)

    def create(self, name: str, exchange_logger: Optional[ExchangeLogger] = None, **options) -> RequestTransformer:
        cls = self.resolve(name)
        return cls(exchange_logger=exchange_logger, **options)


def default_registry() -> TransformerRegistry:
    """Registry pre-populated with the built-in transformers."""
    registry = TransformerRegistry()
    registry.register(LoggingTransformer)
    registry.register(TagTransformer)
    registry.register(RuleFilterTransformer)
    return registry
