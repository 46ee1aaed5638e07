import asyncio
import json
from datetime import datetime

from kbproxy.core.exchange_log import ExchangeLogger, read_records


def test_record_outside_loop_writes_immediately(tmp_path):
    exchange_logger = ExchangeLogger(tmp_path / 'logs')
    exchange_logger.record('inbound', {'messages': [{'role': 'user', 'content': 'hi'}]})

    records = read_records(exchange_logger.current_log_file())
    assert len(records) == 1
    assert records[0]['phase'] == 'inbound'
    assert records[0]['data']['messages'][0]['content'] == 'hi'
    assert records[0]['ts'].endswith('Z')


def test_log_file_named_by_day(tmp_path):
    exchange_logger = ExchangeLogger(tmp_path)
    assert exchange_logger.log_file_for(datetime(2024, 3, 9)).name == '2024-03-09.log'


def test_concurrent_records_keep_write_order_and_whole_lines(tmp_path):
    exchange_logger = ExchangeLogger(tmp_path / 'logs')

    async def scenario():
        async def emit(i):
            exchange_logger.record('outbound', {'chunk': 'x' * 2000, 'i': i})

        await asyncio.gather(*(emit(i) for i in range(50)))
        await exchange_logger.aclose()

    asyncio.run(scenario())

    lines = exchange_logger.current_log_file().read_text(encoding='utf-8').splitlines()
    assert len(lines) == 50
    assert [json.loads(line)['data']['i'] for line in lines] == list(range(50))


def test_directory_removed_between_writes_is_recreated(tmp_path):
    log_dir = tmp_path / 'logs'
    exchange_logger = ExchangeLogger(log_dir)
    exchange_logger.record('inbound', {'n': 1})
    exchange_logger.current_log_file().unlink()
    log_dir.rmdir()

    exchange_logger.record('inbound', {'n': 2})
    assert [r['data']['n'] for r in read_records(exchange_logger.current_log_file())] == [2]


def test_unwritable_directory_does_not_raise(tmp_path):
    blocker = tmp_path / 'not-a-dir'
    blocker.write_text('file in the way')
    exchange_logger = ExchangeLogger(blocker / 'logs')

    exchange_logger.record('inbound', {'n': 1})
    assert not (blocker / 'logs').exists()


def test_non_json_values_are_stringified(tmp_path):
    exchange_logger = ExchangeLogger(tmp_path)
    exchange_logger.record('outbound', {'when': datetime(2024, 1, 1), 'path': tmp_path})

    record = read_records(exchange_logger.current_log_file())[0]
    assert record['data']['when'] == '2024-01-01 00:00:00'
    assert record['data']['path'] == str(tmp_path)


def test_read_records_skips_corrupt_lines(tmp_path):
    log_file = tmp_path / 'broken.log'
    log_file.write_text('{"ts": "t", "phase": "inbound", "data": 1}\nnot json\n\n', encoding='utf-8')
    assert read_records(log_file) == [{'ts': 't', 'phase': 'inbound', 'data': 1}]
