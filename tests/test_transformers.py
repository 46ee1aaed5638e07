import asyncio
import json

import pytest

from kbproxy.core.exchange_log import ExchangeLogger, read_records
from kbproxy.transform.base import LoggingTransformer, RequestTransformer, TagTransformer
from kbproxy.transform.registry import TransformerRegistry, default_registry
from kbproxy.transform.rule_filter import RuleFilterTransformer


class EchoTransformer(RequestTransformer):
    transformer_id = 'echo'

    def process_prompt(self, messages, meta):
        return messages

    def process_response(self, payload, meta):
        return payload


def test_default_registry_knows_builtins():
    assert default_registry().ids() == ['filter', 'logging', 'tag']


def test_register_rejects_classes_that_do_not_subclass_the_base():
    class Duck:
        transformer_id = 'duck'

        def process_prompt(self, messages, meta):
            return messages

        def process_response(self, payload, meta):
            return payload

    with pytest.raises(TypeError):
        TransformerRegistry().register(Duck)


def test_register_rejects_missing_and_duplicate_ids():
    registry = TransformerRegistry()

    class Anonymous(EchoTransformer):
        transformer_id = ''

    class Impostor(EchoTransformer):
        transformer_id = 'echo'

    with pytest.raises(ValueError):
        registry.register(Anonymous)
    registry.register(EchoTransformer)
    registry.register(EchoTransformer)
    with pytest.raises(ValueError):
        registry.register(Impostor)


def test_resolve_imports_module_path():
    registry = TransformerRegistry()
    assert registry.resolve('kbproxy.transform.base:TagTransformer') is TagTransformer
    assert 'tag' in registry.ids()


def test_resolve_unknown_names():
    registry = default_registry()
    with pytest.raises(KeyError):
        registry.resolve('nope')
    with pytest.raises(KeyError):
        registry.resolve('kbproxy.transform.base:Missing')
    with pytest.raises(TypeError):
        registry.resolve('kbproxy.core.ports:LOOPBACK')


def test_create_passes_options_and_exchange_logger(tmp_path):
    exchange_logger = ExchangeLogger(tmp_path)
    transformer = default_registry().create('tag', exchange_logger=exchange_logger, tag='>> ')
    assert isinstance(transformer, TagTransformer)
    assert transformer.tag == '>> '
    assert transformer.exchange_logger is exchange_logger


def test_logging_transformer_records_both_phases_unchanged(tmp_path):
    exchange_logger = ExchangeLogger(tmp_path)
    transformer = LoggingTransformer(exchange_logger)
    messages = [{'role': 'user', 'content': 'hello'}]
    meta = {'model': 'gpt-4o'}

    async def scenario():
        prompt = await transformer.process_prompt(messages, meta)
        chunk = await transformer.process_response('{"id": 1}', meta)
        await exchange_logger.aclose()
        return prompt, chunk

    prompt, chunk = asyncio.run(scenario())
    assert prompt == messages
    assert chunk == '{"id": 1}'

    records = read_records(exchange_logger.current_log_file())
    assert [r['phase'] for r in records] == ['inbound', 'outbound']
    assert records[0]['data'] == {'messages': messages, 'meta': meta}
    assert records[1]['data'] == {'chunk': '{"id": 1}', 'meta': meta}


def test_tag_transformer_prefixes_first_text_message_without_mutating_input():
    transformer = TagTransformer(tag='[PROXY] ')
    messages = [{'role': 'system', 'content': [{'type': 'text', 'text': 'rules'}]},
                {'role': 'user', 'content': 'hi'}]

    result = asyncio.run(transformer.process_prompt(messages, {}))
    assert result[1]['content'] == '[PROXY] hi'
    assert result[0] == messages[0]
    assert messages[1]['content'] == 'hi'


def test_rule_filter_applies_replace_and_regex_remove(tmp_path):
    rules_file = tmp_path / 'filter.json'
    rules_file.write_text(json.dumps([
        {'op': 'replace', 'source': 'ACME', 'target': 'the company'},
        {'op': 'remove', 'source': r'secret-\d+ ?', 'regex': True},
        {'op': 'remove', 'source': '('},
    ]), encoding='utf-8')
    transformer = RuleFilterTransformer(rules_file=str(rules_file), cache_check_interval=0)
    messages = [
        {'role': 'user', 'content': 'ACME key secret-42 (leaked)'},
        {'role': 'user', 'content': [{'type': 'text', 'text': 'ACME'}, {'type': 'image_url'}]},
    ]

    result = asyncio.run(transformer.process_prompt(messages, {}))
    assert result[0]['content'] == 'the company key leaked)'
    assert result[1]['content'][0]['text'] == 'the company'
    assert messages[0]['content'] == 'ACME key secret-42 (leaked)'


def test_rule_filter_without_rules_file_passes_through():
    transformer = RuleFilterTransformer()
    messages = [{'role': 'user', 'content': 'unchanged'}]
    assert asyncio.run(transformer.process_prompt(messages, {})) == messages


def test_rule_filter_reloads_when_file_changes(tmp_path):
    rules_file = tmp_path / 'filter.json'
    rules_file.write_text(json.dumps({'source': 'a', 'target': 'b'}), encoding='utf-8')
    transformer = RuleFilterTransformer(rules_file=str(rules_file), cache_check_interval=0)
    transformer.load_rules(force=True)
    assert transformer.apply_rules('aaa') == 'bbb'

    rules_file.write_text(json.dumps({'source': 'a', 'target': 'c'}), encoding='utf-8')
    transformer._file_mtime = -1
    transformer.load_rules()
    assert transformer.apply_rules('aaa') == 'ccc'
