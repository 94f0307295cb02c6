import json
from unittest.mock import MagicMock

import pytest
import redis

from bmm_portal.exceptions import DataAccessException
from bmm_portal.repositories import (
    InMemoryRepository,
    JSONRepository,
    RedisRepository,
    RepositoryFactory,
)


class TestJSONRepository:
    def test_missing_file_is_empty(self, tmp_path):
        repo = JSONRepository(str(tmp_path / "flows.json"))
        assert not repo.exists()
        assert repo.load_data() == {}
        assert repo.get("tok") is None

    def test_put_get_delete(self, tmp_path):
        path = tmp_path / "nested" / "flows.json"
        repo = JSONRepository(str(path))
        repo.put("tok", {"state": "terminal"})

        assert repo.exists()
        assert json.loads(path.read_text(encoding="utf-8")) == {"tok": {"state": "terminal"}}
        assert repo.get("tok") == {"state": "terminal"}
        assert repo.delete("tok") is True
        assert repo.delete("tok") is False

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "flows.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(DataAccessException) as excinfo:
            JSONRepository(str(path)).load_data()
        assert excinfo.value.operation == "read"

    def test_unserializable_record(self, tmp_path):
        repo = JSONRepository(str(tmp_path / "flows.json"))
        with pytest.raises(DataAccessException):
            repo.put("tok", {"when": object()})


class TestInMemoryRepository:
    def test_records_are_copied(self):
        repo = InMemoryRepository()
        record = {"state": "preference_form", "member": {"name": "Jane"}}
        repo.put("tok", record)
        record["member"]["name"] = "changed"

        loaded = repo.get("tok")
        assert loaded["member"]["name"] == "Jane"
        loaded["state"] = "changed"
        assert repo.get("tok")["state"] == "preference_form"

    def test_delete_and_clear(self):
        repo = InMemoryRepository({"a": {"x": 1}, "b": {"x": 2}})
        assert repo.delete("a") is True
        assert repo.delete("a") is False
        assert repo.exists()
        repo.clear()
        assert not repo.exists()


class TestRedisRepository:
    def test_records_are_json_in_a_hash(self):
        client = MagicMock()
        repo = RedisRepository(client, "bmm:member_flows")
        repo.put("tok", {"state": "terminal"})
        client.hset.assert_called_once_with("bmm:member_flows", "tok", '{"state": "terminal"}')

        client.hget.return_value = '{"state": "terminal"}'
        assert repo.get("tok") == {"state": "terminal"}

        client.hget.return_value = None
        assert repo.get("other") is None

    def test_load_and_delete(self):
        client = MagicMock()
        client.hgetall.return_value = {"a": '{"x": 1}'}
        client.hdel.return_value = 1
        repo = RedisRepository(client, "flows")

        assert repo.load_data() == {"a": {"x": 1}}
        assert repo.delete("a") is True

    def test_redis_errors_become_data_access_errors(self):
        client = MagicMock()
        client.hget.side_effect = redis.ConnectionError("down")
        client.hset.side_effect = redis.ConnectionError("down")
        repo = RedisRepository(client, "flows")

        with pytest.raises(DataAccessException):
            repo.get("tok")
        with pytest.raises(DataAccessException) as excinfo:
            repo.put("tok", {})
        assert excinfo.value.operation == "write"


class TestRepositoryFactory:
    def test_create_repository(self, tmp_path):
        assert isinstance(RepositoryFactory.create_repository("memory"), InMemoryRepository)
        json_repo = RepositoryFactory.create_repository("JSON", file_path=str(tmp_path / "f.json"))
        assert isinstance(json_repo, JSONRepository)

    def test_missing_arguments(self):
        with pytest.raises(ValueError):
            RepositoryFactory.create_repository("json")
        with pytest.raises(ValueError):
            RepositoryFactory.create_repository("redis", url="redis://localhost")
        with pytest.raises(ValueError):
            RepositoryFactory.create_repository("sqlite")

    def test_redis_repository_from_url(self):
        repo = RepositoryFactory.create_repository("redis", url="redis://localhost:6379/0", hash_name="flows")
        assert isinstance(repo, RedisRepository)
        assert repo.hash_name == "flows"
