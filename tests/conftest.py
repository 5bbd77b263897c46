"""
Shared fixtures for cdcapplier tests
"""

import time

import pytest

from cdcapplier.exceptions import SinkError
from cdcapplier.models.config import ApplierConfig
from cdcapplier.models.records import ChangeRecord, OperationKind
from cdcapplier.services.memory_warehouse import InMemoryWarehouse
from cdcapplier.utils.retry import RetryConfig


def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll predicate until it is truthy or timeout elapses"""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def make_record(table="orders", operation="INSERT", key=1, token=10, values=None,
                arrival=None, message_id=None):
    if values is None and operation != "DELETE":
        values = {"status": f"v{token}"}
    return ChangeRecord(
        table=table,
        operation=OperationKind.parse(operation),
        primary_key={"id": key},
        ordering_token=token,
        values=values,
        arrival_timestamp=arrival if arrival is not None else 1000.0 + token,
        message_id=message_id or f"m-{table}-{key}-{token}-{operation}"
    )


@pytest.fixture
def fast_retry():
    """Retry policy without real sleeping"""
    return RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=False,
                       retryable_exceptions=(SinkError,))


@pytest.fixture
def config_dict():
    return {
        "input_topics": ["orders", "customers"],
        "change_log_dataset": "cdc_changelog",
        "replica_dataset": "cdc_replica",
        "update_frequency_secs": 300,
        "retry": {"max_attempts": 3, "base_delay": 0.0, "max_delay": 0.0, "jitter": False},
    }


@pytest.fixture
def config(config_dict):
    return ApplierConfig.from_dict(config_dict)


@pytest.fixture
def binding(config):
    return config.binding_for("orders")


@pytest.fixture
def warehouse():
    return InMemoryWarehouse()


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture(name="wait_until")
def wait_until_fixture():
    return wait_until
