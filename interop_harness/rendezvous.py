"""
Rendezvous store client for the P2P Interop Harness.

The listener side of a case publishes its address and identity under a key
scoped to the run, the case and the role. The dialer side waits for that key.
Records are written with a TTL and a notification is published on a channel
named after the key, so waiters wake up without hammering the store.
"""

import json
import time
from dataclasses import dataclass, asdict
from typing import Optional
import logging

import redis

from .exceptions import InfrastructureError, RendezvousTimeoutError, RendezvousUnavailableError
from .utils.constants import (
    Role, DEFAULT_KEY_NAMESPACE, DEFAULT_RECORD_TTL, DEFAULT_POLL_INTERVAL,
)
from .utils.deadline import Deadline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RendezvousRecord:
    """Bootstrap information a listener publishes for its dialer."""
    test_case_id: str
    role: str
    listen_multiaddr: str
    peer_identity: str
    ready_timestamp: float

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str, test_case_id: str = "", role: str = Role.LISTENER.value) -> "RendezvousRecord":
        """
        Parse a stored record.

        Participants that only write their bare multiaddr are accepted too;
        the peer identity is then taken from the trailing ``/p2p/`` component.

        Raises:
            ValueError: If the value is neither a record nor a multiaddr
        """
        raw = raw.strip()
        if raw.startswith("{"):
            data = json.loads(raw)
            return cls(
                test_case_id=data.get("test_case_id", test_case_id),
                role=data.get("role", role),
                listen_multiaddr=data["listen_multiaddr"],
                peer_identity=data.get("peer_identity", ""),
                ready_timestamp=float(data.get("ready_timestamp", 0.0)),
            )
        if raw.startswith("/"):
            _, _, peer = raw.rpartition("/p2p/")
            return cls(
                test_case_id=test_case_id,
                role=role,
                listen_multiaddr=raw,
                peer_identity=peer,
                ready_timestamp=time.time(),
            )
        raise ValueError(f"Not a rendezvous record: {raw[:80]!r}")


class RendezvousStore:
    """Key-value rendezvous over Redis."""

    def __init__(
        self,
        client: redis.Redis,
        namespace: str = DEFAULT_KEY_NAMESPACE,
        run_id: str = "local",
        ttl: int = DEFAULT_RECORD_TTL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        url: Optional[str] = None
    ):
        """
        Initialize rendezvous store.

        Args:
            client: Redis client created with ``decode_responses=True``
            namespace: Prefix shared by every key the harness writes
            run_id: Identifier of the current run, isolates concurrent runs
            ttl: Seconds a record survives if cleanup never happens
            poll_interval: Upper bound on a single blocking wait for a notification
            url: Connection URL, handed to native participants
        """
        self.client = client
        self.namespace = namespace
        self.run_id = run_id
        self.ttl = ttl
        self.poll_interval = poll_interval
        self.url = url

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RendezvousStore":
        client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=5)
        return cls(client, url=url, **kwargs)

    def key_for(self, case_id: str, role: str) -> str:
        role = role.value if isinstance(role, Role) else role
        return f"{self.namespace}:{self.run_id}:{case_id}:{role}"

    def ping(self) -> None:
        """
        Check that the store is reachable.

        Raises:
            RendezvousUnavailableError: If the store does not answer
        """
        try:
            self.client.ping()
        except redis.RedisError as e:
            raise RendezvousUnavailableError(
                f"Rendezvous store unreachable: {e}", url=self.url
            ) from e
        logger.info(f"Rendezvous store reachable at {self.url or 'configured client'}")

    def publish(self, key: str, record: RendezvousRecord) -> None:
        """Write a record and notify anyone waiting on it."""
        payload = record.to_json()
        try:
            self.client.set(key, payload, ex=self.ttl)
            self.client.publish(key, payload)
        except redis.RedisError as e:
            raise InfrastructureError(f"Failed to publish rendezvous record {key}: {e}") from e
        logger.debug(f"Published rendezvous record {key}")

    def get(self, key: str) -> Optional[RendezvousRecord]:
        """Read a record without waiting. Returns None when absent."""
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            raise InfrastructureError(f"Failed to read rendezvous record {key}: {e}") from e
        if raw is None:
            return None
        role = key.rsplit(":", 1)[-1]
        try:
            return RendezvousRecord.from_json(raw, role=role)
        except (ValueError, KeyError) as e:
            raise InfrastructureError(f"Malformed rendezvous record at {key}: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except redis.RedisError as e:
            raise InfrastructureError(f"Failed to check rendezvous record {key}: {e}") from e

    def await_record(self, key: str, timeout: float) -> RendezvousRecord:
        """
        Block until a record appears under ``key``.

        Subscribes before the first read so a publish between the read and
        the subscription cannot be missed. Each wake-up, notified or not,
        re-reads the key.

        Args:
            key: Key to wait on
            timeout: Seconds to wait in total

        Returns:
            The published record

        Raises:
            RendezvousTimeoutError: If nothing was published in time
            InfrastructureError: If the store fails while waiting
        """
        deadline = Deadline(timeout)
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        try:
            pubsub.subscribe(key)
            while True:
                record = self.get(key)
                if record is not None:
                    return record
                if deadline.expired():
                    raise RendezvousTimeoutError(
                        f"No rendezvous record at {key} after {timeout:.1f}s",
                        key=key, timeout_seconds=timeout,
                    )
                pubsub.get_message(timeout=deadline.clamp(self.poll_interval))
        except redis.RedisError as e:
            raise InfrastructureError(f"Rendezvous wait on {key} failed: {e}") from e
        finally:
            try:
                pubsub.close()
            except redis.RedisError as e:
                logger.debug(f"Error closing subscription for {key}: {e}")

    def cleanup(self, case_id: str) -> None:
        """Delete both role keys of a case. Deleting absent keys is a no-op."""
        keys = [self.key_for(case_id, role) for role in Role]
        try:
            self.client.delete(*keys)
        except redis.RedisError as e:
            raise InfrastructureError(f"Failed to clean up rendezvous keys for {case_id}: {e}") from e
        logger.debug(f"Cleaned up rendezvous keys for {case_id}")

    def close(self) -> None:
        self.client.close()
