"""
MongoDB and Redis client factories.

Clients are built from a loaded settings object and are safe to share across
threads; both drivers pool connections internally.
"""

import time
from typing import Any, Dict

import structlog
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError
from redis import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authz_engine.config.settings import BaseConfig

logger = structlog.get_logger(__name__)


def create_mongo_client(config: BaseConfig, verify: bool = False) -> MongoClient:
    """
    Create a PyMongo client.

    Args:
        config: Loaded settings
        verify: Ping the server before returning

    Raises:
        ConnectionFailure: ``verify`` is set and the server is unreachable
    """
    client = MongoClient(
        config.MONGODB_URI,
        serverSelectionTimeoutMS=config.MONGODB_SERVER_SELECTION_TIMEOUT_MS,
        tz_aware=True,
        appname='authz-engine'
    )
    if verify:
        try:
            client.admin.command('ping')
        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            logger.error("Failed to connect to MongoDB", error=str(e), database=config.MONGODB_DATABASE)
            client.close()
            raise

    logger.info("MongoDB client created", database=config.MONGODB_DATABASE)
    return client


def get_database(client: MongoClient, config: BaseConfig) -> Database:
    return client[config.MONGODB_DATABASE]


def create_redis_client(config: BaseConfig, verify: bool = False) -> Redis:
    """
    Create a redis-py client over a bounded connection pool.

    Responses are decoded to ``str``; the decision cache stores JSON text.
    """
    pool = ConnectionPool.from_url(
        config.REDIS_URL,
        max_connections=config.REDIS_MAX_CONNECTIONS,
        socket_timeout=config.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=config.REDIS_SOCKET_TIMEOUT,
        retry_on_timeout=True,
        decode_responses=True
    )
    client = Redis(connection_pool=pool)
    if verify:
        try:
            client.ping()
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error("Failed to connect to Redis", error=str(e))
            pool.disconnect()
            raise

    logger.info("Redis client created", max_connections=config.REDIS_MAX_CONNECTIONS)
    return client


def health_check(mongo_client: MongoClient, redis_client: Redis) -> Dict[str, Any]:
    """
    Ping both backends.

    The engine can still decide with Redis down (cache misses), so that case is
    ``degraded``; MongoDB down is ``unhealthy``.
    """
    status: Dict[str, Any] = {
        'mongodb': {'status': 'unknown', 'latency_ms': None, 'error': None},
        'redis': {'status': 'unknown', 'latency_ms': None, 'error': None},
    }

    start = time.perf_counter()
    try:
        result = mongo_client.admin.command('ping')
        status['mongodb'] = {
            'status': 'healthy' if result.get('ok') == 1 else 'unhealthy',
            'latency_ms': round((time.perf_counter() - start) * 1000, 2),
            'error': None
        }
    except ConnectionFailure as e:
        status['mongodb'] = {'status': 'unhealthy', 'latency_ms': None, 'error': str(e)}

    start = time.perf_counter()
    try:
        status['redis'] = {
            'status': 'healthy' if redis_client.ping() else 'unhealthy',
            'latency_ms': round((time.perf_counter() - start) * 1000, 2),
            'error': None
        }
    except RedisError as e:
        status['redis'] = {'status': 'unhealthy', 'latency_ms': None, 'error': str(e)}

    if status['mongodb']['status'] != 'healthy':
        status['overall'] = 'unhealthy'
    elif status['redis']['status'] != 'healthy':
        status['overall'] = 'degraded'
    else:
        status['overall'] = 'healthy'

    logger.info(
        "Backend health check completed",
        overall_status=status['overall'],
        mongodb_status=status['mongodb']['status'],
        redis_status=status['redis']['status']
    )
    return status
