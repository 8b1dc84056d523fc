"""
Data Repository Classes for AquaControl

This module implements the Repository pattern for data access. Two
families live here:

- ``DataRepository`` implementations load and save plain dictionaries
  (the members file, the JSON event store's backing file).
- ``EventStore`` implementations are the backing store of the usage
  ledger: an append/delete log with a live subscription that delivers
  the full set of stored records on every change.

The ledger only ever talks to the abstract ``EventStore`` interface, so
switching between in-memory, file and Redis storage is a configuration
choice.
"""

import itertools
import json
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, NamedTuple, Optional

import redis

from .exceptions import DataAccessException, SubscriptionException


logger = logging.getLogger(__name__)


class DataRepository(ABC):
    """
    Abstract base class for data repositories

    This class defines the interface that all data repositories
    must implement, following the Repository pattern.
    """

    @abstractmethod
    def load_data(self) -> Dict:
        """
        Load data from the storage medium

        Returns:
            Dictionary containing the loaded data

        Raises:
            DataAccessException: If data loading fails
        """
        pass

    @abstractmethod
    def save_data(self, data: Dict) -> None:
        """
        Save data to the storage medium

        Args:
            data: Dictionary containing data to save

        Raises:
            DataAccessException: If data saving fails
        """
        pass

    @abstractmethod
    def exists(self) -> bool:
        """
        Check if the data source exists

        Returns:
            True if the data source exists, False otherwise
        """
        pass


class JSONRepository(DataRepository):
    """
    JSON file-based repository implementation

    This class provides data persistence using JSON files,
    with proper error handling and validation.
    """

    def __init__(self, file_path: str):
        """
        Initialize JSON repository

        Args:
            file_path: Path to the JSON file
        """
        self.file_path = file_path

    def load_data(self) -> Dict:
        """
        Load data from JSON file

        Returns:
            Dictionary containing the loaded data, empty if the file is missing

        Raises:
            DataAccessException: If file reading or JSON parsing fails
        """
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                return json.load(f)

        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise DataAccessException(
                "read",
                f"Invalid JSON in {self.file_path}: {str(e)}"
            )
        except OSError as e:
            raise DataAccessException(
                "read",
                f"Cannot read {self.file_path}: {str(e)}"
            )

    def save_data(self, data: Dict) -> None:
        """
        Save data to JSON file

        The file is written next to its final location and then moved
        into place, so readers never observe a half-written file.

        Args:
            data: Dictionary containing data to save

        Raises:
            DataAccessException: If file writing fails
        """
        directory = os.path.dirname(self.file_path)
        temp_path = f"{self.file_path}.tmp"
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)

            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(temp_path, self.file_path)

        except TypeError as e:
            raise DataAccessException(
                "write",
                f"JSON encoding error: {str(e)}"
            )
        except OSError as e:
            raise DataAccessException(
                "write",
                f"Cannot write to {self.file_path}: {str(e)}"
            )

    def exists(self) -> bool:
        """
        Check if the JSON file exists

        Returns:
            True if the file exists, False otherwise
        """
        return os.path.exists(self.file_path)


class InMemoryRepository(DataRepository):
    """
    In-memory repository implementation

    Used for members supplied directly in configuration and in tests.
    """

    def __init__(self, initial_data: Optional[Dict] = None):
        self._data = dict(initial_data or {})

    def load_data(self) -> Dict:
        return self._data.copy()

    def save_data(self, data: Dict) -> None:
        self._data = data.copy()

    def exists(self) -> bool:
        return bool(self._data)


class StoredRecord(NamedTuple):
    """One record as held by an event store"""
    event_id: str
    sequence: int
    data: Dict


ChangeCallback = Callable[[List[StoredRecord]], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    """
    Delivery side of one live subscription

    ``on_error`` fires at most once; after it fires, or after
    ``cancel``, nothing else is delivered.
    """

    def __init__(self, on_change: ChangeCallback, on_error: Optional[ErrorCallback] = None):
        self.on_change = on_change
        self.on_error = on_error
        self.active = True

    def deliver(self, records: List[StoredRecord]) -> None:
        if not self.active:
            return
        try:
            self.on_change(records)
        except Exception as e:
            logger.exception("Subscriber failed while handling a snapshot")
            self.fail(SubscriptionException(f"subscriber callback raised {e!r}"))

    def fail(self, error: Exception) -> None:
        if not self.active:
            return
        self.active = False
        if self.on_error is not None:
            self.on_error(error)

    def cancel(self) -> None:
        self.active = False


class EventStore(ABC):
    """
    Abstract backing store for usage events

    A single logical collection of records. ``create`` assigns the
    record id; ``subscribe`` delivers the complete current record set
    immediately and after every change, whoever made it.
    """

    @abstractmethod
    def create(self, record: Dict) -> str:
        """
        Persist a new record

        Args:
            record: Record fields (no id)

        Returns:
            The generated record id

        Raises:
            DataAccessException: If the store cannot be written
        """
        pass

    @abstractmethod
    def delete(self, event_id: str) -> bool:
        """
        Delete a record by id

        Returns:
            True if a record was removed, False if there was none

        Raises:
            DataAccessException: If the store cannot be written
        """
        pass

    @abstractmethod
    def list_records(self) -> List[StoredRecord]:
        """
        Read every stored record, in insertion order

        Raises:
            DataAccessException: If the store cannot be read
        """
        pass

    @abstractmethod
    def subscribe(self, on_change: ChangeCallback,
                  on_error: Optional[ErrorCallback] = None) -> Callable[[], None]:
        """
        Observe the collection

        Returns:
            Function that stops delivery; safe to call more than once
        """
        pass


class InMemoryEventStore(EventStore):
    """
    Process-local event store

    Mutations and notifications are serialised by one re-entrant lock,
    so every subscriber sees whole snapshots in mutation order.
    """

    def __init__(self):
        self._records: Dict[str, StoredRecord] = {}
        self._sequence = itertools.count(1)
        self._subscriptions: List[Subscription] = []
        self._lock = threading.RLock()

    def create(self, record: Dict) -> str:
        with self._lock:
            event_id = uuid.uuid4().hex
            self._records[event_id] = StoredRecord(event_id, next(self._sequence), dict(record))
            try:
                self._persist()
            except DataAccessException:
                del self._records[event_id]
                raise
            self._notify()
            return event_id

    def delete(self, event_id: str) -> bool:
        with self._lock:
            removed = self._records.pop(event_id, None)
            if removed is None:
                return False
            try:
                self._persist()
            except DataAccessException:
                self._records[event_id] = removed
                raise
            self._notify()
            return True

    def list_records(self) -> List[StoredRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.sequence)

    def subscribe(self, on_change: ChangeCallback,
                  on_error: Optional[ErrorCallback] = None) -> Callable[[], None]:
        subscription = Subscription(on_change, on_error)
        with self._lock:
            self._subscriptions.append(subscription)
            subscription.deliver(self.list_records())

        def unsubscribe() -> None:
            with self._lock:
                subscription.cancel()
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    def _notify(self) -> None:
        records = self.list_records()
        for subscription in list(self._subscriptions):
            subscription.deliver(records)
        self._subscriptions = [s for s in self._subscriptions if s.active]

    def _persist(self) -> None:
        """Hook for stores that mirror the records somewhere durable"""
        pass


class JSONEventStore(InMemoryEventStore):
    """
    Event store persisted to a JSON file

    The whole collection is rewritten after every change. A failed
    write rolls the change back and surfaces as ``DataAccessException``.
    """

    def __init__(self, repository: DataRepository):
        super().__init__()
        self.repository = repository
        data = repository.load_data()
        last_sequence = 0
        for event_id, entry in data.get('events', {}).items():
            sequence = int(entry['sequence'])
            self._records[event_id] = StoredRecord(event_id, sequence, entry['record'])
            last_sequence = max(last_sequence, sequence)
        last_sequence = max(last_sequence, int(data.get('sequence', 0)))
        self._sequence = itertools.count(last_sequence + 1)
        logger.info("Loaded %d usage events from %s", len(self._records),
                    getattr(repository, 'file_path', 'repository'))

    def _persist(self) -> None:
        events = {
            r.event_id: {'sequence': r.sequence, 'record': r.data}
            for r in self.list_records()
        }
        last = max((r.sequence for r in self._records.values()), default=0)
        self.repository.save_data({'sequence': last, 'events': events})


class RedisEventStore(EventStore):
    """
    Event store shared through Redis

    Records live in one hash, a counter provides the insertion order
    and every change is announced on a pub/sub channel so ledgers on
    other devices refresh their snapshot.
    """

    def __init__(self, client: redis.Redis, namespace: str = "aquacontrol",
                 poll_interval: float = 0.1):
        self.client = client
        self.events_key = f"{namespace}:events"
        self.sequence_key = f"{namespace}:sequence"
        self.channel = f"{namespace}:changes"
        self.poll_interval = poll_interval

    @classmethod
    def from_url(cls, url: str, namespace: str = "aquacontrol") -> 'RedisEventStore':
        return cls(redis.Redis.from_url(url, decode_responses=True), namespace)

    def create(self, record: Dict) -> str:
        event_id = uuid.uuid4().hex
        try:
            sequence = self.client.incr(self.sequence_key)
            payload = json.dumps({'sequence': sequence, 'record': record}, ensure_ascii=False)
            self.client.hset(self.events_key, event_id, payload)
            self.client.publish(self.channel, f"create:{event_id}")
        except redis.RedisError as e:
            raise DataAccessException("create", str(e))
        return event_id

    def delete(self, event_id: str) -> bool:
        try:
            removed = self.client.hdel(self.events_key, event_id)
            if removed:
                self.client.publish(self.channel, f"delete:{event_id}")
        except redis.RedisError as e:
            raise DataAccessException("delete", str(e))
        return bool(removed)

    def list_records(self) -> List[StoredRecord]:
        try:
            raw = self.client.hgetall(self.events_key)
        except redis.RedisError as e:
            raise DataAccessException("read", str(e))
        records = []
        for event_id, payload in raw.items():
            entry = json.loads(payload)
            records.append(StoredRecord(event_id, int(entry['sequence']), entry['record']))
        records.sort(key=lambda r: r.sequence)
        return records

    def subscribe(self, on_change: ChangeCallback,
                  on_error: Optional[ErrorCallback] = None) -> Callable[[], None]:
        subscription = Subscription(on_change, on_error)
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        state = {'thread': None}
        delivery_lock = threading.Lock()

        def close() -> None:
            subscription.cancel()
            thread = state['thread']
            if thread is not None:
                thread.stop()
            pubsub.close()

        def refresh(message=None) -> None:
            with delivery_lock:
                try:
                    records = self.list_records()
                except DataAccessException as e:
                    subscription.fail(SubscriptionException(e.details))
                    close()
                    return
                subscription.deliver(records)

        def handle_exception(error, _pubsub, _thread) -> None:
            logger.error("Redis subscription on %s failed: %s", self.channel, error)
            subscription.fail(SubscriptionException(str(error)))
            close()

        try:
            pubsub.subscribe(**{self.channel: refresh})
            state['thread'] = pubsub.run_in_thread(
                sleep_time=self.poll_interval,
                daemon=True,
                exception_handler=handle_exception,
            )
        except redis.RedisError as e:
            subscription.fail(SubscriptionException(str(e)))
            close()
            return close

        refresh()
        return close


class RepositoryFactory:
    """
    Factory class for creating repository instances

    This class provides a centralized way to create different
    types of repositories and event stores based on configuration.
    """

    @staticmethod
    def create_json_repository(file_path: str) -> JSONRepository:
        return JSONRepository(file_path)

    @staticmethod
    def create_memory_repository(initial_data: Optional[Dict] = None) -> InMemoryRepository:
        return InMemoryRepository(initial_data)

    @staticmethod
    def create_event_store(store_type: str, **kwargs) -> EventStore:
        """
        Create an event store based on type

        Args:
            store_type: Type of store ('memory', 'json' or 'redis')
            **kwargs: ``file_path`` for json, ``url`` and optional
                ``namespace`` for redis

        Returns:
            EventStore instance

        Raises:
            ValueError: If store type is not supported
        """
        store_type = store_type.lower()
        if store_type == 'memory':
            return InMemoryEventStore()

        elif store_type == 'json':
            if not kwargs.get('file_path'):
                raise ValueError("file_path is required for JSON event store")
            return JSONEventStore(RepositoryFactory.create_json_repository(kwargs['file_path']))

        elif store_type == 'redis':
            if not kwargs.get('url'):
                raise ValueError("url is required for Redis event store")
            return RedisEventStore.from_url(kwargs['url'], kwargs.get('namespace') or "aquacontrol")

        else:
            raise ValueError(f"Unsupported event store type: {store_type}")
