from __future__ import annotations

import sqlite3

import pytest

from stable_tasks.btreemap import CAPACITY
from stable_tasks.db import SQLiteMemory
from stable_tasks.errors import (
    AlreadyCompleted,
    AuthenticationFailed,
    EncodingBoundExceeded,
    NotFound,
    StorageExhausted,
    ValidationFailed,
)
from stable_tasks.memory import InMemoryMemory
from stable_tasks.repositories import TaskRepository, open_repository
from stable_tasks.schemas import TaskInput
from stable_tasks.service import TaskService
from stable_tasks.settings import get_settings

from .factories import HOUR, NOW, make_payload


class TestCreateAndRead:
    def test_create_scenario(self, service):
        task = service.create("alice", make_payload(), NOW)
        assert task.id == 0
        assert task.owner == "alice"
        assert task.title == "Buy milk"
        assert task.description == "2% milk, 1 gallon"
        assert task.due_date == NOW + HOUR
        assert task.completed is False
        assert task.created_at == NOW
        assert task.updated_at is None
        assert service.read(0) == task

    def test_accepts_task_input_model(self, service):
        task = service.create("alice", TaskInput(**make_payload()), NOW)
        assert service.read(task.id).title == "Buy milk"

    def test_ids_are_unique_and_increasing(self, service):
        ids = [service.create("alice", make_payload(), NOW + i).id for i in range(25)]
        assert ids == list(range(25))

    def test_ids_are_not_reused_after_delete(self, service):
        first = service.create("alice", make_payload(), NOW)
        service.delete("alice", first.id)
        second = service.create("alice", make_payload(), NOW)
        assert second.id == first.id + 1

    def test_read_missing(self, service):
        with pytest.raises(NotFound) as info:
            service.read(999)
        assert "999" in info.value.msg

    def test_read_is_open_to_any_caller(self, service):
        task = service.create("alice", make_payload(), NOW)
        assert service.read(task.id).owner == "alice"

    def test_oversized_record_consumes_no_id(self, service):
        with pytest.raises(EncodingBoundExceeded):
            service.create("alice", make_payload(description="y" * 2000), NOW)
        assert len(service.repository) == 0
        assert service.create("alice", make_payload(), NOW).id == 0


class TestValidation:
    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"title": "ab"}, "title"),
            ({"description": "abcd"}, "description"),
            ({"due_date": NOW - 1}, "due_date"),
            ({"due_date": 2 ** 64}, "due_date"),
        ],
    )
    def test_create_rejects(self, service, overrides, field):
        with pytest.raises(ValidationFailed) as info:
            service.create("alice", make_payload(**overrides), NOW)
        assert any(line.startswith(field) for line in info.value.content)
        assert len(service.repository) == 0

    def test_boundaries_succeed(self, service):
        payload = make_payload(title="abc", description="abcde", due_date=NOW)
        task = service.create("alice", payload, NOW)
        assert task.title == "abc"
        assert task.due_date == NOW

    def test_due_date_message_names_both_times(self, service):
        with pytest.raises(ValidationFailed) as info:
            service.create("alice", make_payload(due_date=NOW - 5), NOW)
        assert str(NOW - 5) in info.value.msg
        assert str(NOW) in info.value.msg

    def test_reports_every_violation(self, service):
        with pytest.raises(ValidationFailed) as info:
            service.create("alice", make_payload(title="a", description="b", due_date=0), NOW)
        assert len(info.value.content) == 3

    def test_missing_fields(self, service):
        with pytest.raises(ValidationFailed):
            service.create("alice", {"title": "Buy milk"}, NOW)

    def test_update_applies_the_same_rules(self, service):
        task = service.create("alice", make_payload(), NOW)
        with pytest.raises(ValidationFailed):
            service.update("alice", task.id, make_payload(due_date=NOW + 5), NOW + 10)
        assert service.read(task.id) == task


class TestUpdate:
    def test_update_replaces_fields(self, service):
        task = service.create("alice", make_payload(), NOW)
        payload = make_payload(
            title="Buy oat milk", description="Barista edition", due_date=NOW + 2 * HOUR
        )
        updated = service.update("alice", task.id, payload, NOW + 1)
        assert updated.title == "Buy oat milk"
        assert updated.description == "Barista edition"
        assert updated.due_date == NOW + 2 * HOUR
        assert updated.updated_at == NOW + 1
        assert updated.created_at == NOW
        assert updated.owner == "alice"
        assert service.read(task.id) == updated

    def test_missing_task_wins_over_bad_input(self, service):
        with pytest.raises(NotFound):
            service.update("alice", 3, {"title": ""}, NOW)

    def test_foreign_caller_is_rejected(self, service):
        task = service.create("alice", make_payload(), NOW)
        with pytest.raises(AuthenticationFailed) as info:
            service.update("bob", task.id, make_payload(title="Hijacked"), NOW)
        assert "bob" in info.value.msg
        assert str(task.id) in info.value.msg
        assert service.read(task.id) == task

    def test_ownership_checked_before_completion(self, service):
        task = service.create("alice", make_payload(), NOW)
        service.complete("alice", task.id, NOW)
        with pytest.raises(AuthenticationFailed):
            service.update("bob", task.id, make_payload(), NOW)

    def test_completion_checked_before_input(self, service):
        task = service.create("alice", make_payload(), NOW)
        service.complete("alice", task.id, NOW)
        with pytest.raises(AlreadyCompleted):
            service.update("alice", task.id, {"title": ""}, NOW)


class TestComplete:
    def test_complete_scenario(self, service):
        task = service.create("alice", make_payload(), NOW)
        outcome = service.complete("alice", task.id, NOW + 100)
        assert "on time" in outcome
        done = service.read(task.id)
        assert done.completed is True
        assert done.updated_at == NOW + 100
        with pytest.raises(AlreadyCompleted):
            service.complete("alice", task.id, NOW + 200)

    def test_completion_at_due_date_is_on_time(self, service):
        task = service.create("alice", make_payload(due_date=NOW + 10), NOW)
        assert "on time" in service.complete("alice", task.id, NOW + 10)

    def test_late_completion(self, service):
        task = service.create("alice", make_payload(due_date=NOW + 10), NOW)
        assert "late" in service.complete("alice", task.id, NOW + 11)

    def test_completed_record_is_frozen(self, service):
        task = service.create("alice", make_payload(), NOW)
        service.complete("alice", task.id, NOW + 1)
        frozen = service.repository.get(task.id).to_bytes()

        with pytest.raises(AlreadyCompleted):
            service.update("alice", task.id, make_payload(title="Changed"), NOW + 2)
        with pytest.raises(AlreadyCompleted):
            service.complete("alice", task.id, NOW + 3)
        assert service.repository.get(task.id).to_bytes() == frozen

    def test_foreign_caller_cannot_complete(self, service):
        task = service.create("alice", make_payload(), NOW)
        with pytest.raises(AuthenticationFailed):
            service.complete("bob", task.id, NOW)
        assert service.read(task.id).completed is False

    def test_complete_missing(self, service):
        with pytest.raises(NotFound):
            service.complete("alice", 0, NOW)


class TestDelete:
    def test_delete_returns_removed_record(self, service):
        task = service.create("alice", make_payload(), NOW)
        assert service.delete("alice", task.id) == task
        with pytest.raises(NotFound):
            service.read(task.id)
        with pytest.raises(NotFound):
            service.delete("alice", task.id)

    def test_foreign_caller_cannot_delete(self, service):
        task = service.create("alice", make_payload(), NOW)
        with pytest.raises(AuthenticationFailed):
            service.delete("bob", task.id)
        assert service.read(task.id) == task

    def test_completed_task_can_be_deleted(self, service):
        task = service.create("alice", make_payload(), NOW)
        service.complete("alice", task.id, NOW)
        assert service.delete("alice", task.id).completed is True


class TestDurableStore:
    def test_state_survives_reopen(self, monkeypatch, db_path):
        monkeypatch.setenv("PERSISTENCE_BACKEND", "sqlite")
        monkeypatch.setenv("SQLITE_DB_PATH", db_path)
        monkeypatch.setenv("BUCKET_SIZE_IN_PAGES", "4")

        service = TaskService(open_repository(get_settings()))
        kept = service.create("alice", make_payload(), NOW)
        gone = service.create("alice", make_payload(title="Walk dog"), NOW)
        service.complete("alice", kept.id, NOW + 1)
        service.delete("alice", gone.id)

        reopened = TaskService(open_repository(get_settings()))
        assert reopened.read(kept.id).completed is True
        with pytest.raises(NotFound):
            reopened.read(gone.id)
        assert reopened.create("bob", make_payload(), NOW).id == 2

    def test_repository_iterates_in_id_order(self, repository: TaskRepository):
        service = TaskService(repository)
        for i in range(15):
            service.create(f"user{i % 3}", make_payload(), NOW)
        service.delete("user1", 4)
        assert [task.id for task in repository] == [i for i in range(15) if i != 4]
        assert len(repository) == 14


class TestAtomicMutations:
    def test_failed_write_during_split_keeps_prior_records(self, monkeypatch, db_path):
        repository = TaskRepository(SQLiteMemory(db_path), bucket_size_in_pages=1)
        service = TaskService(repository)
        # A full root: the next insert has to split it.
        for i in range(CAPACITY):
            service.create("alice", make_payload(title=f"Task {i}"), NOW)

        original_write = SQLiteMemory.write
        calls = []

        def failing_write(self, offset, data):
            calls.append(offset)
            if len(calls) >= 4:
                raise sqlite3.OperationalError("disk I/O error")
            original_write(self, offset, data)

        monkeypatch.setattr(SQLiteMemory, "write", failing_write)
        with pytest.raises(sqlite3.OperationalError):
            service.create("alice", make_payload(title="Too many"), NOW)
        monkeypatch.setattr(SQLiteMemory, "write", original_write)

        reopened = TaskRepository(SQLiteMemory(db_path), bucket_size_in_pages=1)
        assert [task.id for task in reopened] == list(range(CAPACITY))
        assert reopened.get(CAPACITY - 1).title == f"Task {CAPACITY - 1}"

        # The live repository dropped its stale view and keeps working.
        assert len(repository) == CAPACITY
        assert service.create("alice", make_payload(), NOW).id == CAPACITY
        again = TaskRepository(SQLiteMemory(db_path), bucket_size_in_pages=1)
        assert [task.id for task in again] == list(range(CAPACITY + 1))

    def test_exhaustion_consumes_no_id(self):
        repository = TaskRepository(InMemoryMemory(max_pages=4), bucket_size_in_pages=1)
        service = TaskService(repository)
        created = []
        with pytest.raises(StorageExhausted):
            for _ in range(10_000):
                created.append(service.create("alice", make_payload(), NOW).id)

        assert created == list(range(len(created)))
        assert len(repository) == len(created)
        assert repository._ids.get() == created[-1] + 1
        assert service.read(created[-1]).owner == "alice"
        # Existing records can still be rewritten in place.
        service.complete("alice", created[0], NOW)
        assert service.read(created[0]).completed is True
