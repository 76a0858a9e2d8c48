"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import os
import types
import uuid

import pytest

from fakes import FakeSource, InMemorySenderStore, make_config


@pytest.fixture(scope="session", autouse=True)
def _env_vars():
    """
    Ensures a deterministic environment for every test run.
    Overwrite *only* the variables needed by the Powertools utilities.
    """
    original = os.environ.copy()
    os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "sender-aggregator-test")
    os.environ.setdefault("POWERTOOLS_LOG_LEVEL", "INFO")
    os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
    os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "SenderAggregator")
    os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
    yield
    os.environ.clear()
    os.environ.update(original)


@pytest.fixture
def lambda_context():
    """A *very* small stand-in for the LambdaContext object."""
    return types.SimpleNamespace(
        function_name="sender-aggregator",
        memory_limit_in_mb=512,
        aws_request_id="req-" + uuid.uuid4().hex,
        invoked_function_arn="arn:aws:lambda:eu-west-1:000000000000:function:dummy",
        get_remaining_time_in_millis=lambda: 300_000,
    )


@pytest.fixture
def store() -> InMemorySenderStore:
    return InMemorySenderStore()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def empty_source() -> FakeSource:
    return FakeSource([])
