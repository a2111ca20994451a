import asyncio
import json
import sys
import threading

sys.path.insert(0, '.')

from orchestration.command_bus import CommandBus
from orchestration.commands import AIDecision, AIDecisionRecord, Error, Notify, OrderResult
from orchestration.persistence import JsonlStore, PersistenceLogger


def test_tail_reads_backwards_across_chunks(tmp_path):
    store = JsonlStore(tmp_path / 'trades.jsonl', tail_limit=5, chunk_size=16)
    for i in range(40):
        store.append({'type': 'trade', 'timestamp_ms': i, 'detail': 'x' * (i % 7)})
    tail = store.tail()
    assert [r['timestamp_ms'] for r in tail] == [35, 36, 37, 38, 39]
    assert [r['timestamp_ms'] for r in store.tail(2)] == [38, 39]
    assert len(store.tail(100)) == 40


def test_tail_skips_corrupt_lines_and_missing_file(tmp_path):
    path = tmp_path / 'errors.jsonl'
    assert JsonlStore(path).tail() == []
    path.write_text('{"timestamp_ms": 1}\nnot json\n{"timestamp_ms": 2}\n\n[1, 2]\n{"timestamp_ms": 3}')
    assert [r['timestamp_ms'] for r in JsonlStore(path, chunk_size=8).tail()] == [1, 2, 3]


def test_logger_routes_records_in_bus_order(tmp_path):
    async def scenario():
        bus = CommandBus()
        stores = (
            JsonlStore(tmp_path / 'trade_logs.jsonl', 512),
            JsonlStore(tmp_path / 'ai_decisions.jsonl', 64),
            JsonlStore(tmp_path / 'error_logs.jsonl', 256),
        )
        logger = PersistenceLogger(bus.subscribe('persistence'), *stores)
        task = asyncio.create_task(logger.run())
        await bus.publish(OrderResult('r1', 'place', 'BTC-USDT-SWAP', 'ok', 'accepted', timestamp_ms=10))
        await bus.publish(Notify('BTC-USDT-SWAP', 'breach', 1.0))
        await bus.publish(AIDecision(AIDecisionRecord(timestamp_ms=11, cycle=1, outcome='validated')))
        await bus.publish(Error('boom', {'component': 'websocket'}, timestamp_ms=12))
        await bus.publish(OrderResult('r2', 'close', 'ETH-USDT-SWAP', 'rejected', 'margin', timestamp_ms=13))
        await bus.close()
        await asyncio.wait_for(task, timeout=1)
        return logger, stores

    logger, (trades, ai, errors) = asyncio.run(scenario())
    assert logger.written == 4
    trade_records = trades.tail()
    assert [r['request_id'] for r in trade_records] == ['r1', 'r2']
    assert all(r['type'] == 'trade' and 'timestamp_ms' in r for r in trade_records)
    assert ai.tail()[0]['outcome'] == 'validated'
    assert ai.tail()[0]['type'] == 'ai_decision'
    assert errors.tail()[0]['context'] == {'component': 'websocket'}
    raw_lines = (tmp_path / 'trade_logs.jsonl').read_text().splitlines()
    assert len(raw_lines) == 2
    assert json.loads(raw_lines[0])['status'] == 'ok'


def test_append_never_rewrites_existing_lines(tmp_path):
    path = tmp_path / 'trade_logs.jsonl'
    path.write_text('{"timestamp_ms": 0, "type": "trade"}\n')
    JsonlStore(path).append({'timestamp_ms': 1, 'type': 'trade'})
    lines = path.read_text().splitlines()
    assert lines[0] == '{"timestamp_ms": 0, "type": "trade"}'
    assert len(lines) == 2


class ThreadRecordingStore(JsonlStore):
    def __init__(self, path, fail=False):
        super().__init__(path)
        self.fail = fail
        self.threads = []

    def append(self, record):
        self.threads.append(threading.get_ident())
        if self.fail:
            raise OSError('disk full')
        super().append(record)


def test_appends_run_off_the_event_loop_and_failures_are_contained(tmp_path):
    async def scenario():
        loop_thread = threading.get_ident()
        bus = CommandBus()
        trades = ThreadRecordingStore(tmp_path / 'trade_logs.jsonl')
        errors = ThreadRecordingStore(tmp_path / 'error_logs.jsonl', fail=True)
        logger = PersistenceLogger(bus.subscribe('persistence'), trades, JsonlStore(tmp_path / 'ai.jsonl'), errors)
        ok = await logger.handle(OrderResult('r1', 'place', 'BTC-USDT-SWAP', 'ok', timestamp_ms=1))
        failed = await logger.handle(Error('boom', timestamp_ms=2))
        return loop_thread, trades, errors, ok, failed, logger

    loop_thread, trades, errors, ok, failed, logger = asyncio.run(scenario())
    assert ok and not failed
    assert logger.written == 1
    assert trades.threads and all(t != loop_thread for t in trades.threads + errors.threads)
    assert trades.tail()[0]['request_id'] == 'r1'
