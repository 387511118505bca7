"""
Integration tier fixtures.

Container fixtures are imported here so only the integration tests can reach
real MongoDB and Redis.
"""

from tests.fixtures.containers import (  # noqa: F401
    container_config,
    docker_required,
    mongo_client,
    mongodb_container,
    redis_client,
    redis_container,
)
