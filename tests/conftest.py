import json
from unittest.mock import AsyncMock, MagicMock

import pytest


class AsyncContextManager:
    def __init__(self):
        self.exc_type = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.exc_type = exc_type
        return False


@pytest.fixture
def mock_message_context():
    """Async context manager standing in for message.process()."""
    return AsyncContextManager()


@pytest.fixture
def make_message(mock_message_context):
    def factory(event, headers=None, message_type="__from_event__", body=None):
        message = AsyncMock()
        message.body = body if body is not None else json.dumps(event.envelope()).encode("utf-8")
        message.type = event.event_type if message_type == "__from_event__" else message_type
        message.message_id = str(event.event_id) if event is not None else "msg-1"
        message.headers = headers or {}
        message.exchange = "order.events"
        message.routing_key = "order.confirmed"
        message.process = MagicMock(return_value=mock_message_context)
        return message

    return factory
