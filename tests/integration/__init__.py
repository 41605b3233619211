"""
Integration tests for tracedqueue.

The end-to-end tests run the producer and consumer loops against the
in-memory broker and need no infrastructure. The RabbitMQ tests need a
server, either at RABBITMQ_URL or started via testcontainers, and are
skipped automatically when none is available.

Run integration tests:
    pytest tests/integration/ -v

Run only RabbitMQ tests:
    pytest tests/integration/ -v -m rabbitmq

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
