import pytest


# Force anyio to use asyncio
@pytest.fixture
def anyio_backend():
    return "asyncio"
