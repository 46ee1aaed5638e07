#!/usr/bin/env python3
"""Transformer interface applied to prompts and responses passing through the proxy."""
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, List, Optional

from ..core.exchange_log import ExchangeLogger

Messages = List[Dict[str, Any]]
Meta = Dict[str, Any]


class RequestTransformer(ABC):
    """Base class every proxy transformer must subclass.

    Either hook may be a plain method or a coroutine; the proxy awaits the
    result when needed. Exceptions raised here never reach the HTTP caller:
    the proxy logs them and forwards the unmodified input.
    """

    transformer_id: ClassVar[str] = ''

    def __init__(self, exchange_logger: Optional[ExchangeLogger] = None, **options):
        self.exchange_logger = exchange_logger
        self.options = options

    @abstractmethod
    def process_prompt(self, messages: Messages, meta: Meta) -> Messages:
        """Return the messages to forward upstream."""

    @abstractmethod
    def process_response(self, payload: Any, meta: Meta) -> Any:
        """Return the response body (or one stream event payload) to send back."""


class LoggingTransformer(RequestTransformer):
    """Pass-through transformer that records every exchange."""

    transformer_id = 'logging'

    def __init__(self, exchange_logger: Optional[ExchangeLogger] = None, **options):
        super().__init__(exchange_logger, **options)
        self.logger = logging.getLogger('kbproxy.transform')

    def _record(self, phase: str, data: Dict[str, Any]):
        if self.exchange_logger is not None:
            self.exchange_logger.record(phase, data)

    async def process_prompt(self, messages: Messages, meta: Meta) -> Messages:
        self.logger.info(f"Processing prompt with {len(messages or [])} messages")
        self._record('inbound', {'messages': messages, 'meta': meta})
        return messages

    async def process_response(self, payload: Any, meta: Meta) -> Any:
        self._record('outbound', {'chunk': payload, 'meta': meta})
        return payload


class TagTransformer(LoggingTransformer):
    """Prefixes the first message that carries text with a fixed tag."""

    transformer_id = 'tag'

    def __init__(self, exchange_logger: Optional[ExchangeLogger] = None, tag: str = '[PROXY] ', **options):
        super().__init__(exchange_logger, **options)
        self.tag = tag

    async def process_prompt(self, messages: Messages, meta: Meta) -> Messages:
        messages = await super().process_prompt(messages, meta)
        tagged = copy.deepcopy(messages)
        for message in tagged:
            if isinstance(message, dict) and isinstance(message.get('content'), str):
                original = message['content']
                message['content'] = f"{self.tag}{original}"
                self.logger.info(f"Modified first message: {original[:50]!r}")
                break
        else:
            self.logger.info("No messages to modify or first message has no content")
        return tagged
