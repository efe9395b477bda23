"""Integration fixtures: a live AMQP broker from HOPPER_TEST_AMQP_URL."""

from __future__ import annotations

import os
import uuid

import pytest


@pytest.fixture
def amqp_url() -> str:
    url = os.environ.get('HOPPER_TEST_AMQP_URL')
    if not url:
        pytest.skip('HOPPER_TEST_AMQP_URL not set')
    return url


@pytest.fixture
def exchange_name() -> str:
    """Per-test exchange so leftover queues from earlier runs never interfere."""
    return f'hopper-test-{uuid.uuid4().hex[:8]}'
