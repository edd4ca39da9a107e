"""
Shared fixtures: temporary databases and a scripted generation client.
"""

import os
import tempfile
from typing import List, Optional, Union

import pytest

from calm_gateway.core.context import ContextAssembler
from calm_gateway.core.gateway import Gateway
from calm_gateway.core.ledger import UsageLedger
from calm_gateway.sdk.generation_client import GenerationError, GenerationResult
from calm_gateway.storage.models import UsageRecord
from calm_gateway.storage.repository import (
    JournalRepository,
    MessageRepository,
    UserRepository,
    initialize_schema,
)


@pytest.fixture
def db_path():
    """Path to a freshly initialized SQLite database."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path


class ScriptedClient:
    """Stand-in generation client that replays queued results or errors."""

    def __init__(self, responses: Optional[List[Union[GenerationResult, GenerationError]]] = None):
        self.responses = list(responses or [])
        self.prompts: List[str] = []
        self.calls = 0

    def generate(self, prompt, options=None, timeout=None):
        self.calls += 1
        self.prompts.append(prompt)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def scripted_client():
    return ScriptedClient()


class GatewayHarness:
    """Gateway over a temporary database and a scripted client."""

    def __init__(self, db_path, client, user_id, used=0, today="2026-10-18"):
        self.user_id = user_id
        self.users = UserRepository(db_path)
        self.messages = MessageRepository(db_path)
        self.journal = JournalRepository(db_path)
        record = self.users.create_user(user_id)
        if used:
            self.users.save_user(UsageRecord(user_id, used, today, record.version))
        self.client = client
        self.ledger = UsageLedger(self.users, today=lambda: today)
        self.gateway = Gateway(self.ledger, client, ContextAssembler(self.messages), self.messages)

    @property
    def used(self):
        return self.users.get_user(self.user_id).credits_used_today


@pytest.fixture
def make_harness(db_path, scripted_client):
    """Factory for a gateway whose client replays the given responses."""
    def factory(responses=None, used=0, user_id="ana@example.com"):
        scripted_client.responses.extend(responses or [])
        return GatewayHarness(db_path, scripted_client, user_id, used)
    return factory
