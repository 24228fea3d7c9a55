# inventory-consumer

A library for a Kafka consumer group that reads change events (as emitted by
Debezium) and replicates them to Kessel Inventory. Each message carries an
`operation` header (`created`, `updated`, `deleted` or `migration`). The
consumer turns the message value into a report-resource or delete-resource
request, as a plain `dict`, and hands it to an inventory client.

The package has no runtime dependencies. You supply the Kafka connection and
the inventory client as objects that follow the `KafkaConsumer` and
`ClientProvider` protocols in `inventory_consumer.consumer`.

## Modules

- **`inventory_consumer.parsers`**: the message records `Header`,
  `TopicPartition` and `Message`. `parse_headers(msg, required_headers)`
  returns the required headers as a dict, ignores any others, and raises
  `ParseError` when a required header is missing or `operation` is empty.
  `parse_create_or_update_message` and `parse_delete_message` return the
  `payload` object of a JSON change event as a dict (an empty dict when the
  payload is absent or null). They raise `ParseError` for malformed JSON or a
  payload that is not an object.
- **`inventory_consumer.types`**: `HostMessage`, `HostPayload` and
  `CanonicalFacts`, decoded from host change events. Missing or null fields
  become empty strings.
- **`inventory_consumer.transforms`**:
  `transform_host_to_report_resource_request(msg)` builds a report-resource
  request of type `host` for the `hbi` reporter from a host change event. The
  satellite, subscription-manager and insights-inventory ids in the reporter
  section are freshly generated UUIDs. Undecodable events and undecodable
  `canonical_facts` raise `TransformError`.
- **`inventory_consumer.consumer`**: `InventoryConsumer` and `run`. More on
  both below.
- **`inventory_consumer.metrics`**: `StatsData.from_dict` reads the Kafka
  client's statistics JSON. `MetricsCollector` keeps `Gauge` and `Counter`
  instruments. `collect(stats)` records the statistics for the subscribed
  topics, skipping partition `-1`. The collector also holds the application
  counters `msgs_processed`, `msg_process_failures`, `consumer_errors` and
  `kafka_error_events`, which `incr(counter, operation, err_reason, **attrs)`
  increments by one. `render()` returns every metric in Prometheus text format.
  `serve_metrics(collector, port=9000)` serves it at `/metrics` over HTTP and
  blocks until the process ends.
- **`inventory_consumer.options`**, **`retry`**, **`auth`**, **`client_options`**:
  the settings dataclasses, described under Configuration.
- **`inventory_consumer.common`**: logging setup and flag helpers, described
  under Logging.

## The consume loop

`InventoryConsumer(consumer, client, topics, retry_options=None, logger=None,
metrics=None, sleep=time.sleep)` runs the loop:

- `consume()` subscribes to the topics and polls until `stop()` is called.
  Every 10th offset (`check_if_commit`) triggers a batch commit of the stored
  offsets. Offsets are also committed when partitions are revoked
  (`rebalance_callback`) and at shutdown.
- When a message fails its headers or its processing, the loop commits what is
  stored, closes the consumer and raises `ConsumerClosed`. A fatal `KafkaError`
  event ends the loop the same way. A non-fatal one is counted and polling
  continues.
- `Stats` events feed the metrics collector. Other event types are logged and
  ignored.
- `process_message(operation, msg)` parses the message and, if
  `client.is_enabled()`, sends the request through `retry`. It returns the
  client's response. Messages with an unknown operation are counted and
  dropped.
- `retry(operation)` calls the operation up to `operation_max_retries` times.
  Between attempts it sleeps `RetryOptions.backoff(attempts)` seconds, which is
  `backoff_factor × attempts × 0.3`, capped at `max_backoff_seconds`. When the
  attempts run out it raises `MaxRetriesReached`.
- `shutdown()` commits pending offsets and closes the consumer. It returns
  `True`, or `False` if the consumer was already closed.
- `format_offsets(offsets)` renders committed offsets as `[partition:offset]`
  entries.

`run(options, consumer_factory, client, logger)` builds a fresh consumer from
`consumer_factory()` and consumes. After each `ConsumerClosed` it backs off and
builds a new consumer, so consumption resumes from the last commit. It does
this up to `consumer_max_retries` times, where `-1` means without limit. Any
other error is re-raised.

## Configuration

The settings are dataclasses with these defaults:

| Class             | Notable defaults                                                                      |
|-------------------|---------------------------------------------------------------------------------------|
| `ConsumerOptions` | group id `kic`, session timeout `45000`, auto commit `false`, offset reset `earliest` |
| `RetryOptions`    | consumer retries `2`, operation retries `3`, backoff factor `5`, max backoff `30` s   |
| `AuthOptions`     | authentication disabled                                                               |
| `ClientOptions`   | client enabled, insecure transport, OIDC auth disabled                                |

- **Flags:** each class can register its settings as flags on an
  `argparse.ArgumentParser` with `add_flags(parser, prefix)`, under a dotted
  prefix such as `consumer` or `consumer.retry-options`. Parsing writes the
  values straight into the options object. `ConsumerOptions.add_flags` also
  registers the auth and retry flags.
- **Validation:** `ConsumerOptions.validate()` raises `ValueError` when there
  are no bootstrap servers or no topics. `ClientOptions.validate()` raises
  `ValueError` when the URL is empty.
- **Completed form:** `AuthConfig` and `RetryConfig` wrap their options. Their
  `complete()` returns the completed form.

## Logging

- `parse_log_level(name)` maps `debug`, `info`, `warn`, `error` or `fatal` to a
  `logging` level. Any other name falls back to `INFO`.
- `get_log_level(settings)` reads `log.level` from a settings mapping.
- `init_logger(level, LoggerOptions(service_name, service_version))` returns a
  logger that writes to stdout, tagged with the service name and version.
- `flag_names(parser)` lists the long flag names registered on a parser.

## Example

```python
from inventory_consumer.common import parse_log_level
from inventory_consumer.consumer import check_if_commit, format_offsets
from inventory_consumer.parsers import TopicPartition
from inventory_consumer.retry import RetryOptions

print(RetryOptions().backoff(1))                  # 1.5
print(check_if_commit(TopicPartition(offset=10)))  # True
print(format_offsets([TopicPartition(partition=0, offset=10)]))  # [0:10]
print(parse_log_level("debug"))                   # 10
```

## What the package does not do

- **No Kafka client.** It does not connect to Kafka itself; you pass in an
  object that polls, commits and closes.
- **No inventory client.** It has no gRPC client for the inventory service and
  no OIDC token handling. `ClientOptions` only holds those settings.
- **No command or launcher.** There is no command-line program and no
  configuration-file or environment loading. Wiring the options, consumer,
  client and metrics server together is left to the caller.