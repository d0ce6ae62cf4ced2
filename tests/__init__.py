"""
Tests Package - Unit Tests for the Export Worker

Test structure:
- tests/helpers.py - Archive builders, chunked streams and fakes
- tests/conftest.py - Pytest configuration (anyio on asyncio)

External services (Redis, Export API, SFTP) are replaced by mocks,
httpx.MockTransport and the in-memory lease backend.
"""
