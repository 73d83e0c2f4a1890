"""
Data models for the job queue system.
"""
import json
from typing import Any, Dict, Optional

PENDING = 'pending'
RESERVED = 'reserved'
FAILED = 'failed'

STATUSES = (PENDING, RESERVED, FAILED)


class JobRecord:
    """
    A job as persisted by a queue backend.

    Attributes:
        id: Backend-assigned identifier (auto-increment row id or Redis counter)
        handler: 'module:QualName' of the Job subclass that runs it
        queue: Name of the queue the job waits on
        payload: Key-value data handed to the job
        status: pending, reserved or failed
        attempts: Number of attempts already consumed
        max_attempts: Total attempts allowed before the job fails permanently
        available_at: Epoch seconds before which the job cannot be claimed
        reserved_at: Epoch seconds when a worker claimed it (None if unclaimed)
        created_at: Epoch seconds when the job was dispatched
        exception: Failure reason (failed records only)
        failed_at: Epoch seconds when the job failed permanently (failed records only)
    """

    def __init__(
        self,
        id: Optional[int],
        handler: str,
        queue: str = "default",
        payload: Optional[Dict[str, Any]] = None,
        status: str = PENDING,
        attempts: int = 0,
        max_attempts: int = 1,
        available_at: float = 0.0,
        reserved_at: Optional[float] = None,
        created_at: float = 0.0,
        exception: Optional[str] = None,
        failed_at: Optional[float] = None
    ):
        self.id = id
        self.handler = handler
        self.queue = queue
        self.payload = payload if payload is not None else {}
        self.status = status
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.available_at = available_at
        self.reserved_at = reserved_at
        self.created_at = created_at
        self.exception = exception
        self.failed_at = failed_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dictionary for storage. The payload is serialized to JSON."""
        return {
            'id': self.id,
            'handler': self.handler,
            'queue': self.queue,
            'payload': json.dumps(self.payload),
            'status': self.status,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'available_at': self.available_at,
            'reserved_at': self.reserved_at,
            'created_at': self.created_at,
            'exception': self.exception,
            'failed_at': self.failed_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobRecord":
        """
        Create a JobRecord from a database row or Redis hash.

        Redis hashes hold every field as a string and use '' for None,
        so values are coerced here.
        """
        payload = data.get('payload') or '{}'
        if isinstance(payload, str):
            payload = json.loads(payload)

        return cls(
            id=int(data['id']) if data.get('id') not in (None, '') else None,
            handler=data['handler'],
            queue=data.get('queue') or 'default',
            payload=payload,
            status=data.get('status') or PENDING,
            attempts=int(data.get('attempts') or 0),
            max_attempts=int(data.get('max_attempts') or 1),
            available_at=_float(data.get('available_at')) or 0.0,
            reserved_at=_float(data.get('reserved_at')),
            created_at=_float(data.get('created_at')) or 0.0,
            exception=data.get('exception') or None,
            failed_at=_float(data.get('failed_at'))
        )

    def __repr__(self):
        return f"JobRecord(id={self.id}, handler={self.handler}, queue={self.queue}, status={self.status})"


def _float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    return float(value)
