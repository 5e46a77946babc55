from pytest_archon import archrule


def test_core_is_broker_agnostic() -> None:
    """
    Routing, retry and dead-letter logic must not know about RabbitMQ.
    Only the rabbitmq adapter package may import aio_pika.
    """
    (
        archrule("core_is_broker_agnostic")
        .match("resilient_messaging.*")
        .exclude("resilient_messaging.rabbitmq*")
        .should_not_import("aio_pika*")
        .should_not_import("resilient_messaging.rabbitmq*")
        .check("resilient_messaging", only_direct_imports=True)
    )


def test_core_does_not_depend_on_memory_adapters() -> None:
    """
    In-memory adapters are for tests and embedding; the core talks to ports.
    """
    (
        archrule("core_uses_ports")
        .match("resilient_messaging.*")
        .exclude("resilient_messaging.memory*")
        .should_not_import("resilient_messaging.memory*")
        .check("resilient_messaging", only_direct_imports=True)
    )


def test_ports_isolation() -> None:
    """
    Ports are leaves: they must not import orchestration or adapters.
    """
    (
        archrule("ports_isolation")
        .match("resilient_messaging.ports*")
        .should_not_import("resilient_messaging.router")
        .should_not_import("resilient_messaging.worker")
        .should_not_import("resilient_messaging.monitor")
        .should_not_import("resilient_messaging.bootstrap")
        .should_not_import("resilient_messaging.memory*")
        .should_not_import("resilient_messaging.rabbitmq*")
        .check("resilient_messaging", only_direct_imports=True)
    )


def test_prometheus_confined_to_observability() -> None:
    """
    prometheus_client is optional; only the observability module imports it.
    """
    (
        archrule("prometheus_is_optional")
        .match("resilient_messaging*")
        .exclude("resilient_messaging.observability")
        .should_not_import("prometheus_client*")
        .check("resilient_messaging", only_direct_imports=True)
    )
