"""
Security and audit events emitted by the authorization engine.

The engine reports denials and every role or grant mutation as a structured
event. Delivery is the publisher's concern; the facade treats publishing as
best effort and never lets a failed publish change a decision or undo a
mutation.

Publishers:
- LoggingEventPublisher writes events to the structured log
- HttpEventPublisher posts Event Grid schema batches over httpx with retries
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx
import structlog
from prometheus_client import Counter
from pydantic import BaseModel, Field
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from authz_engine.auth.exceptions import EventPublishError
from authz_engine.data.models import utc_now

logger = structlog.get_logger(__name__)

events_published_total = Counter(
    'authz_events_published_total',
    'Authorization events handed to a publisher by type and result',
    ['event_type', 'publisher', 'result']
)


class AuthzEventType(str, Enum):
    ROLE_CREATED = "role.created"
    ROLE_UPDATED = "role.updated"
    ROLE_DELETED = "role.deleted"
    ROLE_ASSIGNED = "role.assigned"
    ROLE_REMOVED = "role.removed"
    ROLE_APPROVAL_REQUIRED = "role.approval.required"
    PERMISSION_DENIED = "permission.denied"
    PERMISSION_TEMP_GRANTED = "permission.temp.granted"
    PERMISSION_TEMP_REVOKED = "permission.temp.revoked"
    USER_ROLES_SYNCED = "user.roles.synced"


class AuthzEvent(BaseModel):
    """An event in Event Grid shape."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: AuthzEventType
    subject: str
    event_time: datetime = Field(default_factory=utc_now)
    data_version: str = "1.0"
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_event_grid(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'eventType': self.event_type.value,
            'subject': self.subject,
            'eventTime': self.event_time.isoformat(),
            'dataVersion': self.data_version,
            'data': self.data,
        }


class EventPublisher(ABC):
    """Destination for authorization events."""

    name = "abstract"

    @abstractmethod
    def publish(self, event: AuthzEvent) -> None:
        """Deliver one event. May raise; callers decide whether that matters."""

    def close(self) -> None:
        pass


class LoggingEventPublisher(EventPublisher):
    """Writes events to the structured log. Used when no endpoint is configured."""

    name = "logging"

    def publish(self, event: AuthzEvent) -> None:
        logger.info(
            "Authorization event",
            event_id=event.id,
            event_type=event.event_type.value,
            subject=event.subject,
            data=event.data
        )
        events_published_total.labels(
            event_type=event.event_type.value, publisher=self.name, result='success'
        ).inc()


class HttpEventPublisher(EventPublisher):
    """
    Posts events to an Event Grid compatible topic endpoint.

    Transport errors and 5xx responses are retried with jittered exponential
    backoff; after the last attempt ``EventPublishError`` is raised.

    Args:
        endpoint: Topic URL
        access_key: Sent as the ``aeg-sas-key`` header
        timeout: Per-request timeout in seconds
        max_attempts: Total attempts per event
        client: Optional preconfigured ``httpx.Client``
    """

    name = "http"

    def __init__(
        self,
        endpoint: str,
        access_key: Optional[str] = None,
        timeout: float = 5.0,
        max_attempts: int = 3,
        client: Optional[httpx.Client] = None
    ):
        self.endpoint = endpoint
        self.max_attempts = max_attempts
        headers = {'Content-Type': 'application/json'}
        if access_key:
            headers['aeg-sas-key'] = access_key
        self.client = client or httpx.Client(timeout=timeout, headers=headers)

    def publish(self, event: AuthzEvent) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(initial=0.2, max=2.0),
            retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
        )
        try:
            for attempt in retrying:
                with attempt:
                    self._send([event.to_event_grid()])
        except RetryError as e:
            events_published_total.labels(
                event_type=event.event_type.value, publisher=self.name, result='error'
            ).inc()
            cause = e.last_attempt.exception()
            raise EventPublishError(event.event_type.value, str(cause)) from cause
        except httpx.HTTPStatusError as e:
            events_published_total.labels(
                event_type=event.event_type.value, publisher=self.name, result='rejected'
            ).inc()
            raise EventPublishError(event.event_type.value, str(e)) from e

        events_published_total.labels(
            event_type=event.event_type.value, publisher=self.name, result='success'
        ).inc()
        logger.debug("Event published", event_id=event.id, event_type=event.event_type.value)

    def _send(self, batch: List[Dict[str, Any]]) -> None:
        response = self.client.post(self.endpoint, json=batch)
        if response.status_code >= 500:
            raise _RetryableStatus(response)
        response.raise_for_status()

    def close(self) -> None:
        self.client.close()


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f'HTTP {response.status_code} from event endpoint')
        self.response = response


def build_event(
    event_type: AuthzEventType,
    subject: str,
    clock: Callable[[], datetime] = utc_now,
    **data: Any
) -> AuthzEvent:
    """Build an event whose payload carries an ISO ``timestamp``."""
    now = clock()
    payload = {key: value for key, value in data.items() if value is not None}
    payload['timestamp'] = now.isoformat()
    return AuthzEvent(event_type=event_type, subject=subject, event_time=now, data=payload)
