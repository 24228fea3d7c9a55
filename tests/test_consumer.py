import gc
import json
import logging

import pytest

from inventory_consumer.consumer import (
    AssignedPartitions,
    ConsumerClosed,
    InventoryConsumer,
    KafkaError,
    MaxRetriesReached,
    Operation,
    RevokedPartitions,
    Stats,
    check_if_commit,
    format_offsets,
    run,
)
from inventory_consumer.options import ConsumerOptions
from inventory_consumer.parsers import Header, Message, ParseError, TopicPartition
from inventory_consumer.retry import RetryOptions

TEST_MESSAGE_KEY = b'{"schema":{"type":"string","optional":false},"payload":"00000000-0000-0000-0000-000000000000"}'
TEST_CREATE_OR_UPDATE_MESSAGE = (
    b'{"schema":{"type":"struct","fields":[{"type":"string","optional":true,"field":"type"},'
    b'{"type":"string","optional":true,"field":"reporter_type"},'
    b'{"type":"string","optional":true,"field":"reporter_instance_id"}],"optional":true,"name":"payload"},'
    b'"payload":{"type":"host","reporter_type":"hbi","reporter_instance_id":"00000000-0000-0000-0000-000000000000",'
    b'"representations":{"metadata":{"local_resource_id":"00000000-0000-0000-0000-000000000000",'
    b'"api_href":"https://apiHref.com/","console_href":"https://www.console.com/","reporter_version":"2.7.16"},'
    b'"common":{"workspace_id":"00000000-0000-0000-0000-000000000000"},'
    b'"reporter":{"satellite_id":"00000000-0000-0000-0000-000000000000",'
    b'"subscription_manager_id":"00000000-0000-0000-0000-000000000000",'
    b'"insights_inventory_id":"00000000-0000-0000-0000-000000000000","ansible_host":"my-ansible-host"}}}}'
)
TEST_DELETE_MESSAGE = (
    b'{"schema":{"type":"struct","fields":[],"optional":true,"name":"payload"},'
    b'"payload":{"reference":{"resource_type":"host","resource_id":"00000000-0000-0000-0000-000000000000",'
    b'"reporter":{"type":"hbi"}}}}'
)
TEST_HOST_MESSAGE = json.dumps({
    "schema": {},
    "payload": {"id": "host-1", "organization_id": "org-1", "ansible_host": "my-ansible-host"},
}).encode()


class FakeKafka:
    def __init__(self, events=(), commit_error=None, close_error=None,
                 subscribe_error=None, lost=False):
        self.events = list(events)
        self.commit_error = commit_error
        self.close_error = close_error
        self.subscribe_error = subscribe_error
        self.lost = lost
        self.committed = []
        self.closed = False
        self.close_calls = 0
        self.owner = None

    def subscribe_topics(self, topics, rebalance_cb):
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.owner = next(obj for obj in gc.get_referents(rebalance_cb)
                          if isinstance(obj, InventoryConsumer))

    def poll(self, timeout):
        if self.events:
            return self.events.pop(0)
        self.owner.stop()
        return None

    def commit_offsets(self, offsets):
        if self.commit_error is not None:
            raise self.commit_error
        self.committed.append(list(offsets))
        return list(offsets)

    def is_closed(self):
        return self.closed

    def close(self):
        self.close_calls += 1
        if self.close_error is not None:
            raise self.close_error
        self.closed = True

    def assignment_lost(self):
        return self.lost


class FakeClient:
    def __init__(self, enabled=True, error=None):
        self.enabled = enabled
        self.error = error
        self.reported = []
        self.deleted = []

    def create_or_update_resource(self, request):
        self.reported.append(request)
        if self.error is not None:
            raise self.error
        return {"status": "reported"}

    def delete_resource(self, request):
        self.deleted.append(request)
        if self.error is not None:
            raise self.error
        return {"status": "deleted"}

    def is_enabled(self):
        return self.enabled


def make_consumer(kafka=None, client=None, retry_options=None):
    sleeps = []
    consumer = InventoryConsumer(
        kafka if kafka is not None else FakeKafka(),
        client if client is not None else FakeClient(),
        ["test-topic"],
        retry_options=retry_options if retry_options is not None else RetryOptions(),
        sleep=sleeps.append,
    )
    return consumer, sleeps


def message(operation, value=b"", offset=0, partition=0):
    headers = [] if operation is None else [Header("operation", operation.encode())]
    return Message(value=value, key=TEST_MESSAGE_KEY, headers=headers,
                   topic_partition=TopicPartition("test-topic", partition, offset))


@pytest.mark.parametrize("offset, expected", [(10, True), (1, False), (0, True), (20, True)])
def test_check_if_commit(offset, expected):
    assert check_if_commit(TopicPartition(offset=offset)) is expected


def test_format_offsets():
    offsets = [TopicPartition("t", 0, 10), TopicPartition("t", 1, 3), TopicPartition("t", 2, -1001)]
    assert format_offsets(offsets) == "[0:10],[1:3],[2:unset]"
    assert format_offsets([]) == ""


SINGLE = [TopicPartition(offset=10, partition=0)]
MANY = [TopicPartition(offset=o, partition=p) for o, p in
        [(10, 0), (11, 0), (1, 1), (2, 1), (12, 0), (13, 0), (3, 1), (4, 1)]]


@pytest.mark.parametrize("stored", [SINGLE, MANY])
def test_commit_stored_offsets_clears_storage(stored):
    kafka = FakeKafka()
    consumer, _ = make_consumer(kafka=kafka)
    consumer.offset_storage = list(stored)
    consumer.commit_stored_offsets()
    assert kafka.committed == [stored]
    assert consumer.offset_storage == []


def test_commit_stored_offsets_error_keeps_storage():
    failure = RuntimeError("commit failed")
    consumer, _ = make_consumer(kafka=FakeKafka(commit_error=failure))
    consumer.offset_storage = [TopicPartition(offset=10, partition=1)]
    with pytest.raises(RuntimeError) as info:
        consumer.commit_stored_offsets()
    assert info.value is failure
    assert consumer.offset_storage == [TopicPartition(offset=10, partition=1)]


def test_retry_returns_result():
    consumer, sleeps = make_consumer()
    assert consumer.retry(lambda: "success") == "success"
    assert sleeps == []


def test_retry_raises_max_retries_after_limit():
    calls = []

    def failing():
        calls.append(1)
        raise RuntimeError("fail")

    consumer, sleeps = make_consumer()
    with pytest.raises(MaxRetriesReached):
        consumer.retry(failing)
    assert len(calls) == 3
    assert sleeps == [1.5, 3.0]
    assert consumer.metrics.msg_process_failures.value(
        {"operation": "Retry", "reason": "fail"}) == 3


def test_retry_succeeds_after_failures():
    results = iter([RuntimeError("a"), "done"])

    def flaky():
        item = next(results)
        if isinstance(item, Exception):
            raise item
        return item

    consumer, sleeps = make_consumer()
    assert consumer.retry(flaky) == "done"
    assert sleeps == [1.5]


@pytest.mark.parametrize("operation, value", [
    (Operation.CREATED.value, TEST_CREATE_OR_UPDATE_MESSAGE),
    (Operation.UPDATED.value, TEST_CREATE_OR_UPDATE_MESSAGE),
])
def test_process_message_create_or_update(operation, value):
    client = FakeClient()
    consumer, _ = make_consumer(client=client)
    response = consumer.process_message(operation, message(operation, value))
    assert response == {"status": "reported"}
    request = client.reported[0]
    assert request["type"] == "host"
    assert request["reporter_type"] == "hbi"
    assert request["representations"]["reporter"]["ansible_host"] == "my-ansible-host"
    assert request["representations"]["metadata"]["reporter_version"] == "2.7.16"


def test_process_message_delete():
    client = FakeClient()
    consumer, _ = make_consumer(client=client)
    response = consumer.process_message("deleted", message("deleted", TEST_DELETE_MESSAGE))
    assert response == {"status": "deleted"}
    assert client.deleted == [{"reference": {
        "resource_type": "host",
        "resource_id": "00000000-0000-0000-0000-000000000000",
        "reporter": {"type": "hbi"},
    }}]


def test_process_message_unknown_operation_is_dropped():
    client = FakeClient()
    consumer, _ = make_consumer(client=client)
    assert consumer.process_message("fake-operation", message("fake-operation")) is None
    assert client.reported == [] and client.deleted == []
    assert consumer.metrics.msg_process_failures.value(
        {"operation": "unknown-operation-type"}) == 1


def test_process_message_client_disabled():
    client = FakeClient(enabled=False)
    consumer, _ = make_consumer(client=client)
    assert consumer.process_message("created", message("created", TEST_DELETE_MESSAGE)) is None
    assert client.reported == []


def test_process_message_migration():
    client = FakeClient()
    consumer, _ = make_consumer(client=client)
    consumer.process_message("migration", message("migration", TEST_HOST_MESSAGE))
    request = client.reported[0]
    assert request["reporter_instance_id"] == "host-1"
    assert request["representations"]["common"] == {"workspace_id": "org-1"}


def test_process_message_parse_failure():
    consumer, _ = make_consumer()
    with pytest.raises(ParseError):
        consumer.process_message("created", message("created", b"not json"))


def test_process_message_client_failure():
    client = FakeClient(error=RuntimeError("unavailable"))
    consumer, _ = make_consumer(client=client)
    with pytest.raises(MaxRetriesReached):
        consumer.process_message("created", message("created", TEST_CREATE_OR_UPDATE_MESSAGE))
    assert len(client.reported) == 3


def test_consume_processes_and_commits_batches():
    events = [message("created", TEST_CREATE_OR_UPDATE_MESSAGE, offset=9),
              message("created", TEST_CREATE_OR_UPDATE_MESSAGE, offset=10),
              message("created", TEST_CREATE_OR_UPDATE_MESSAGE, offset=11)]
    kafka = FakeKafka(events)
    consumer, _ = make_consumer(kafka=kafka)
    consumer.consume()
    assert kafka.committed == [
        [TopicPartition("test-topic", 0, 9), TopicPartition("test-topic", 0, 10)],
        [TopicPartition("test-topic", 0, 11)],
    ]
    assert kafka.closed
    assert consumer.metrics.msgs_processed.value({"operation": "created"}) == 3


def test_consume_missing_headers_closes_consumer():
    kafka = FakeKafka([message(None, TEST_CREATE_OR_UPDATE_MESSAGE)])
    consumer, _ = make_consumer(kafka=kafka)
    with pytest.raises(ConsumerClosed):
        consumer.consume()
    assert kafka.closed
    assert consumer.metrics.msg_process_failures.value(
        {"operation": "ParseHeaders", "reason": "missing headers"}) == 1


def test_consume_processing_failure_closes_consumer():
    kafka = FakeKafka([message("created", b"not json", offset=3)])
    consumer, _ = make_consumer(kafka=kafka)
    with pytest.raises(ConsumerClosed):
        consumer.consume()
    assert consumer.offset_storage == []
    assert kafka.committed == []


def test_consume_fatal_kafka_error():
    kafka = FakeKafka([KafkaError("_FATAL", "broker down", fatal=True)])
    consumer, _ = make_consumer(kafka=kafka)
    with pytest.raises(ConsumerClosed):
        consumer.consume()
    assert consumer.metrics.kafka_error_events.value(
        {"operation": "kafka", "code": "_FATAL", "error": "broker down"}) == 1


def test_consume_recoverable_kafka_error_continues():
    events = [KafkaError("_TRANSPORT", "timeout"),
              message("deleted", TEST_DELETE_MESSAGE, offset=1)]
    kafka = FakeKafka(events)
    consumer, _ = make_consumer(kafka=kafka)
    consumer.consume()
    assert consumer.metrics.msgs_processed.value({"operation": "deleted"}) == 1
    assert kafka.committed == [[TopicPartition("test-topic", 0, 1)]]


def test_consume_collects_stats():
    stats = json.dumps({"name": "consumer-1", "client_id": "kic", "replyq": 4,
                        "cgrp": {"state": "up"}})
    consumer, _ = make_consumer(kafka=FakeKafka([Stats(stats)]))
    consumer.consume()
    labels = {"name": "consumer-1", "client_id": "kic"}
    assert consumer.metrics.replyq.value(labels) == 4
    assert consumer.metrics.state.value({**labels, "state": "up"}) == 0


def test_consume_bad_stats_counts_failure():
    consumer, _ = make_consumer(kafka=FakeKafka([Stats("{broken")]))
    consumer.consume()
    assert consumer.metrics.replyq.value({"name": "", "client_id": ""}) is None


def test_consume_subscribe_failure():
    failure = RuntimeError("no broker")
    consumer, _ = make_consumer(kafka=FakeKafka(subscribe_error=failure))
    with pytest.raises(RuntimeError) as info:
        consumer.consume()
    assert info.value is failure
    assert consumer.metrics.consumer_errors.value(
        {"operation": "SubscribeTopics", "reason": "no broker"}) == 1


def test_consume_close_failure():
    consumer, _ = make_consumer(kafka=FakeKafka(close_error=OSError("close failed")))
    with pytest.raises(RuntimeError, match="error in consumer shutdown"):
        consumer.consume()


def test_shutdown_commits_pending_offsets():
    kafka = FakeKafka()
    consumer, _ = make_consumer(kafka=kafka)
    consumer.offset_storage = [TopicPartition("test-topic", 0, 7)]
    assert consumer.shutdown() is True
    assert kafka.committed == [[TopicPartition("test-topic", 0, 7)]]
    assert kafka.closed


def test_shutdown_already_closed():
    kafka = FakeKafka()
    kafka.closed = True
    consumer, _ = make_consumer(kafka=kafka)
    assert consumer.shutdown() is False
    assert kafka.close_calls == 0


def test_rebalance_revoked_commits():
    kafka = FakeKafka(lost=True)
    consumer, _ = make_consumer(kafka=kafka)
    consumer.offset_storage = [TopicPartition("test-topic", 0, 5)]
    consumer.rebalance_callback(kafka, RevokedPartitions([TopicPartition("test-topic", 0)]))
    assert kafka.committed == [[TopicPartition("test-topic", 0, 5)]]
    assert consumer.offset_storage == []


def test_rebalance_assigned_does_not_commit():
    kafka = FakeKafka()
    consumer, _ = make_consumer(kafka=kafka)
    consumer.offset_storage = [TopicPartition("test-topic", 0, 5)]
    consumer.rebalance_callback(kafka, AssignedPartitions([TopicPartition("test-topic", 0)]))
    assert kafka.committed == []
    assert consumer.offset_storage == [TopicPartition("test-topic", 0, 5)]


def test_rebalance_revoked_commit_failure():
    kafka = FakeKafka(commit_error=RuntimeError("commit failed"))
    consumer, _ = make_consumer(kafka=kafka)
    with pytest.raises(RuntimeError, match="commit failed"):
        consumer.rebalance_callback(kafka, RevokedPartitions([]))


def _options(max_retries):
    return ConsumerOptions(
        bootstrap_servers=["localhost:9092"],
        topics=["test-topic"],
        retry_options=RetryOptions(consumer_max_retries=max_retries, backoff_factor=0),
    )


def test_run_restarts_until_retries_exhausted():
    created = []

    def factory():
        kafka = FakeKafka([message(None)])
        created.append(kafka)
        return kafka

    assert run(_options(2), factory, FakeClient(), logging.getLogger("test")) is None
    assert len(created) == 2
    assert all(kafka.closed for kafka in created)


def test_run_returns_when_stopped():
    created = []

    def factory():
        kafka = FakeKafka([message("deleted", TEST_DELETE_MESSAGE, offset=1)])
        created.append(kafka)
        return kafka

    client = FakeClient()
    run(_options(5), factory, client, logging.getLogger("test"))
    assert len(created) == 1
    assert len(client.deleted) == 1


def test_run_propagates_other_errors():
    created = []

    def factory():
        kafka = FakeKafka(subscribe_error=RuntimeError("no broker"))
        created.append(kafka)
        return kafka

    with pytest.raises(RuntimeError, match="no broker"):
        run(_options(3), factory, FakeClient(), logging.getLogger("test"))
    assert len(created) == 1