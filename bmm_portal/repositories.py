"""
Data Repository Classes for the BMM Portal

This module implements the Repository pattern for local storage. The portal
keeps very little state of its own (the event backend is the source of
truth): the venue configuration asset, and per-member flow records so a
member can resume the preference flow across requests. Repositories make it
easy to switch between a JSON file, process memory and Redis.
"""

import json
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import redis

from .exceptions import DataAccessException


class DataRepository(ABC):
    """
    Abstract base class for data repositories

    Records are JSON-compatible dictionaries stored under string keys.
    """

    @abstractmethod
    def load_data(self) -> Dict:
        """
        Load every record from the storage medium

        Returns:
            Dictionary of key to record

        Raises:
            DataAccessException: If data loading fails
        """

    @abstractmethod
    def get(self, key: str) -> Optional[Dict]:
        """
        Load one record

        Args:
            key: Record key

        Returns:
            The record, or None if it does not exist
        """

    @abstractmethod
    def put(self, key: str, value: Dict) -> None:
        """
        Store one record, replacing any previous value

        Args:
            key: Record key
            value: JSON-compatible record
        """

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Remove one record

        Returns:
            True if a record was removed
        """

    @abstractmethod
    def exists(self) -> bool:
        """
        Check if the data source exists

        Returns:
            True if the data source exists, False otherwise
        """


class JSONRepository(DataRepository):
    """
    Store backed by one JSON object in a file

    Used for the venue asset and for development flow records. Every call
    reads the file again, so edits to the venue asset apply without a
    restart.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path

    def load_data(self) -> Dict:
        """
        Read the whole file

        Returns:
            The stored object, empty when the file does not exist yet

        Raises:
            DataAccessException: If the file is unreadable or not valid JSON
        """
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise DataAccessException("read", f"{self.file_path} is not valid JSON: {e}")
        except OSError as e:
            raise DataAccessException("read", f"Cannot read {self.file_path}: {e}")

    def save_data(self, data: Dict) -> None:
        """
        Replace the file contents

        A failed save leaves the previous contents in place.

        Raises:
            DataAccessException: If the data is not serializable or the
                file cannot be written
        """
        try:
            text = json.dumps(data, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise DataAccessException("write", f"Record for {self.file_path} is not serializable: {e}")

        temp_path = f"{self.file_path}.tmp"
        try:
            directory = os.path.dirname(self.file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(temp_path, 'w', encoding='utf-8') as f:
                f.write(text)
            os.replace(temp_path, self.file_path)
        except OSError as e:
            raise DataAccessException("write", f"Cannot write {self.file_path}: {e}")

    def get(self, key: str) -> Optional[Dict]:
        return self.load_data().get(key)

    def put(self, key: str, value: Dict) -> None:
        data = self.load_data()
        data[key] = value
        self.save_data(data)

    def delete(self, key: str) -> bool:
        data = self.load_data()
        if key not in data:
            return False
        del data[key]
        self.save_data(data)
        return True

    def exists(self) -> bool:
        return os.path.exists(self.file_path)


class InMemoryRepository(DataRepository):
    """
    In-memory repository implementation

    Used by the tests and by single-process development servers.
    Records are copied on the way in and out.
    """

    def __init__(self, initial_data: Optional[Dict] = None):
        """
        Initialize in-memory repository

        Args:
            initial_data: Optional initial data to store
        """
        self._data = dict(initial_data or {})

    def load_data(self) -> Dict:
        return {key: _copy(value) for key, value in self._data.items()}

    def get(self, key: str) -> Optional[Dict]:
        value = self._data.get(key)
        return _copy(value) if value is not None else None

    def put(self, key: str, value: Dict) -> None:
        self._data[key] = _copy(value)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def exists(self) -> bool:
        return bool(self._data)

    def clear(self) -> None:
        """Clear all data from memory"""
        self._data.clear()


class RedisRepository(DataRepository):
    """
    Redis hash repository implementation

    Every record is a JSON string in one hash field, so several portal
    workers see the same flow state.
    """

    def __init__(self, client: redis.Redis, hash_name: str):
        """
        Initialize Redis repository

        Args:
            client: Redis client created with decode_responses=True
            hash_name: Name of the hash holding the records
        """
        self.client = client
        self.hash_name = hash_name

    def load_data(self) -> Dict:
        try:
            raw = self.client.hgetall(self.hash_name)
        except redis.RedisError as e:
            raise DataAccessException("read", f"Redis error on {self.hash_name}: {str(e)}")
        return {key: json.loads(value) for key, value in raw.items()}

    def get(self, key: str) -> Optional[Dict]:
        try:
            raw = self.client.hget(self.hash_name, key)
        except redis.RedisError as e:
            raise DataAccessException("read", f"Redis error on {self.hash_name}: {str(e)}")
        return json.loads(raw) if raw else None

    def put(self, key: str, value: Dict) -> None:
        try:
            self.client.hset(self.hash_name, key, json.dumps(value))
        except redis.RedisError as e:
            raise DataAccessException("write", f"Redis error on {self.hash_name}: {str(e)}")

    def delete(self, key: str) -> bool:
        try:
            return bool(self.client.hdel(self.hash_name, key))
        except redis.RedisError as e:
            raise DataAccessException("write", f"Redis error on {self.hash_name}: {str(e)}")

    def exists(self) -> bool:
        try:
            return bool(self.client.exists(self.hash_name))
        except redis.RedisError as e:
            raise DataAccessException("read", f"Redis error on {self.hash_name}: {str(e)}")


def _copy(value: Any) -> Any:
    return json.loads(json.dumps(value))


class RepositoryFactory:
    """
    Factory class for creating repository instances

    This class provides a centralized way to create different
    types of repositories based on configuration.
    """

    @staticmethod
    def create_json_repository(file_path: str) -> JSONRepository:
        return JSONRepository(file_path)

    @staticmethod
    def create_memory_repository(initial_data: Optional[Dict] = None) -> InMemoryRepository:
        return InMemoryRepository(initial_data)

    @staticmethod
    def create_redis_repository(url: str, hash_name: str) -> RedisRepository:
        """
        Create a Redis repository from a connection URL

        Args:
            url: Redis URL, e.g. redis://localhost:6379/0
            hash_name: Name of the hash holding the records

        Returns:
            RedisRepository instance
        """
        client = redis.Redis.from_url(url, decode_responses=True)
        return RedisRepository(client, hash_name)

    @staticmethod
    def create_repository(repo_type: str, **kwargs) -> DataRepository:
        """
        Create a repository based on type

        Args:
            repo_type: Type of repository ('json', 'memory' or 'redis')
            **kwargs: Additional arguments for repository creation

        Returns:
            DataRepository instance

        Raises:
            ValueError: If repository type is not supported
        """
        if repo_type.lower() == 'json':
            if 'file_path' not in kwargs:
                raise ValueError("file_path is required for JSON repository")
            return RepositoryFactory.create_json_repository(kwargs['file_path'])

        elif repo_type.lower() == 'memory':
            return RepositoryFactory.create_memory_repository(
                kwargs.get('initial_data')
            )

        elif repo_type.lower() == 'redis':
            if 'url' not in kwargs or 'hash_name' not in kwargs:
                raise ValueError("url and hash_name are required for Redis repository")
            return RepositoryFactory.create_redis_repository(kwargs['url'], kwargs['hash_name'])

        else:
            raise ValueError(f"Unsupported repository type: {repo_type}")
