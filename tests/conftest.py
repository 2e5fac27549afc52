from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import build_store


@pytest.fixture
def store():
    return build_store()


@pytest.fixture
def audit():
    audit_logger = MagicMock()
    audit_logger.log = AsyncMock()
    return audit_logger
