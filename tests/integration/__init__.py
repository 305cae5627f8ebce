"""
Integration tests for clientrecords against PostgreSQL.

PostgreSQL is provisioned with testcontainers; the tests are skipped when
testcontainers or Docker is not available.

Run integration tests:
    pytest tests/integration/ -v

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
