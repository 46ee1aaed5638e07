#!/usr/bin/env python3
"""Transformer that rewrites prompt text using replace/remove rules from a JSON file."""
import copy
import json
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.exchange_log import ExchangeLogger
from .base import LoggingTransformer, Messages, Meta


class RuleFilterTransformer(LoggingTransformer):
    """Applies ``filter.json`` rules to every text part of the outgoing messages.

    Rule format (object or list of objects)::

        {"op": "replace", "source": "foo", "target": "bar"}
        {"op": "remove", "source": "secret-\\\\d+", "regex": true}

    The file is re-read when its modification time changes, checked at most
    once per ``cache_check_interval`` seconds.
    """

    transformer_id = 'filter'

    def __init__(self, exchange_logger: Optional[ExchangeLogger] = None,
                 rules_file: Optional[str] = None, cache_check_interval: float = 1.0, **options):
        super().__init__(exchange_logger, **options)
        self.rules_file = Path(rules_file).expanduser() if rules_file else None
        self.cache_check_interval = cache_check_interval
        self._rules: List[Dict[str, Any]] = []
        self._file_mtime = 0.0
        self._last_check_time = 0.0

    def _should_reload(self) -> bool:
        """Return True when the rules file changed since the last load."""
        current_time = time.time()
        if current_time - self._last_check_time < self.cache_check_interval:
            return False
        self._last_check_time = current_time

        if self.rules_file is None:
            return False
        try:
            if not self.rules_file.exists():
                if self._rules:
                    self._rules = []
                    self._file_mtime = 0.0
                return False
            return self.rules_file.stat().st_mtime != self._file_mtime
        except OSError:
            return False

    def load_rules(self, force: bool = False):
        if not force and not self._should_reload():
            return
        if self.rules_file is None or not self.rules_file.exists():
            self._rules = []
            self._file_mtime = 0.0
            return

        try:
            with open(self.rules_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            self._file_mtime = self.rules_file.stat().st_mtime
        except (json.JSONDecodeError, OSError) as e:
            self.logger.error(f"Failed to load filter rules: {e}")
            self._rules = []
            return

        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            self.logger.warning("Filter rules must be an object or list of objects")
            data = []

        rules = []
        for rule in data:
            if not isinstance(rule, dict) or not rule.get('source'):
                continue
            compiled = None
            if rule.get('regex'):
                try:
                    compiled = re.compile(rule['source'], re.DOTALL)
                except re.error as e:
                    self.logger.warning(f"Invalid filter regex {rule['source']!r}: {e}")
                    continue
            rules.append({
                'op': rule.get('op', 'replace'),
                'source': rule['source'],
                'target': rule.get('target', ''),
                'compiled': compiled,
            })
        self._rules = rules
        self.logger.info(f"Loaded filter rules: {len(self._rules)} entries")

    def apply_rules(self, text: str) -> str:
        for rule in self._rules:
            if rule['op'] == 'remove':
                target = ''
            elif rule['op'] == 'replace':
                target = rule['target']
            else:
                continue
            if rule['compiled'] is not None:
                text = rule['compiled'].sub(target, text)
            else:
                text = text.replace(rule['source'], target)
        return text

    async def process_prompt(self, messages: Messages, meta: Meta) -> Messages:
        messages = await super().process_prompt(messages, meta)
        self.load_rules()
        if not self._rules:
            return messages

        filtered = copy.deepcopy(messages)
        for message in filtered:
            if not isinstance(message, dict):
                continue
            content = message.get('content')
            if isinstance(content, str):
                message['content'] = self.apply_rules(content)
            elif isinstance(content, list):
                for part in content:
                    if isinstance(part, dict) and isinstance(part.get('text'), str):
                        part['text'] = self.apply_rules(part['text'])
        return filtered
