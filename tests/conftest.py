"""Shared pytest fixtures."""

from typing import Any

import pytest

from src.google.types import Credential


@pytest.fixture
def credential() -> Credential:
    """A valid, far-from-expiry credential."""
    return Credential(access_token="access-1", refresh_token="refresh-1", expiry_timestamp=4_000_000_000)


@pytest.fixture
def thread_payload() -> dict[str, Any]:
    """A minimal Gmail threads.get response with two messages."""
    return {
        "id": "thread_001",
        "historyId": "9001",
        "snippet": "Please review the attached budget",
        "messages": [
            {
                "id": "msg_001",
                "threadId": "thread_001",
                "historyId": "8990",
                "internalDate": "1772182800000",
                "snippet": "First message",
                "labelIds": ["INBOX"],
                "payload": {"headers": [
                    {"name": "From", "value": "Bob <bob@example.com>"},
                    {"name": "Subject", "value": "Q2 budget"},
                ]},
            },
            {
                "id": "msg_002",
                "threadId": "thread_001",
                "historyId": "9001",
                "internalDate": "1772186400000",
                "snippet": "Please review the attached budget",
                "labelIds": ["INBOX", "UNREAD"],
                "payload": {"headers": [
                    {"name": "from", "value": "Alice <alice@example.com>"},
                    {"name": "TO", "value": "me@example.com"},
                    {"name": "Subject", "value": "Re: Q2 budget"},
                ]},
            },
        ],
    }
