from __future__ import annotations

import pytest

from ytarticle.config import ApiSettings


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def api_settings() -> ApiSettings:
    return ApiSettings(api_token="token-123", webhook_secret="s3cret")
