import logging

from opscord.core.config import Settings
from opscord.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry


def test_disabled_telemetry_sets_up_nothing() -> None:
    provider = setup_telemetry(Settings(otel_enabled=False), service_name="opscord-test")

    assert provider is None
    shutdown_telemetry(provider)


def test_log_records_carry_empty_trace_ids_outside_spans() -> None:
    configure_logging()

    record = logging.getLogRecordFactory()("opscord.test", logging.INFO, __file__, 1, "hello", None, None)

    assert record.trace_id == "0" * 32
    assert record.span_id == "0" * 16
