"""Tests for task management operations."""

import tempfile
from pathlib import Path

import pytest

from work_reconciler.core import agents as agents_mod
from work_reconciler.core import projects as projects_mod
from work_reconciler.core import tasks as tasks_mod
from work_reconciler.db.engine import init_db
from work_reconciler.db.models import AgentType, TaskState


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        projects_mod.create_project(conn, "test", "Test Project", tmp)
        yield conn
        conn.close()


@pytest.fixture
def accessor(db):
    return tasks_mod.TaskAccessor(db)


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_truncation(self):
        assert len(tasks_mod.slugify("a" * 100)) <= 60


class TestTaskCRUD:
    def test_top_level_starts_planning(self, db):
        task = tasks_mod.create_task(db, "Build login page", "test")
        assert task.id == "build-login-page"
        assert task.state == TaskState.PLANNING
        assert task.is_top_level
        assert task.attempts == 0

    def test_leaf_starts_pending(self, db):
        tasks_mod.create_task(db, "Epic", "test")
        leaf = tasks_mod.create_task(db, "Form", "test", parent_id="epic")
        assert leaf.state == TaskState.PENDING
        assert leaf.parent_id == "epic"
        assert not leaf.is_top_level

    def test_missing_parent_raises(self, db):
        with pytest.raises(ValueError, match="Parent task not found"):
            tasks_mod.create_task(db, "Orphan", "test", parent_id="nope")

    def test_create_duplicate_gets_suffix(self, db):
        t1 = tasks_mod.create_task(db, "Same", "test")
        t2 = tasks_mod.create_task(db, "Same", "test")
        assert t1.id == "same"
        assert t2.id == "same-2"

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, "nonexistent") is None

    def test_list_top_level_and_children(self, db):
        tasks_mod.create_task(db, "Epic", "test")
        tasks_mod.create_task(db, "Child", "test", parent_id="epic")
        assert [t.id for t in tasks_mod.list_tasks(db, "test")] == ["epic"]
        assert [t.id for t in tasks_mod.list_tasks(db, "test", parent_id="epic")] == ["child"]

    def test_update_records_state_event(self, db):
        tasks_mod.create_task(db, "Epic", "test")
        tasks_mod.create_task(db, "Child", "test", parent_id="epic")
        task = tasks_mod.update_task(db, "child", state=TaskState.COMPLETED)
        assert task.state == TaskState.COMPLETED
        assert task.completed_at is not None
        events = tasks_mod.get_task_events(db, "child")
        assert [e.event_type for e in events] == ["created", "state_changed"]
        assert events[-1].old_value == "PENDING"
        assert events[-1].new_value == "COMPLETED"

    def test_update_unknown_field_raises(self, db):
        tasks_mod.create_task(db, "Epic", "test")
        with pytest.raises(ValueError):
            tasks_mod.update_task(db, "epic", priority=1)

    def test_update_missing_returns_none(self, db):
        assert tasks_mod.update_task(db, "ghost", state=TaskState.FAILED) is None


class TestHierarchy:
    def test_top_level_parent_walks_to_root(self, db):
        tasks_mod.create_task(db, "Root", "test")
        tasks_mod.create_task(db, "Mid", "test", parent_id="root")
        tasks_mod.create_task(db, "Leaf", "test", parent_id="mid")
        assert tasks_mod.get_top_level_parent(db, "leaf").id == "root"
        assert tasks_mod.get_top_level_parent(db, "mid").id == "root"

    def test_top_level_task_has_no_parent(self, db):
        tasks_mod.create_task(db, "Root", "test")
        assert tasks_mod.get_top_level_parent(db, "root") is None

    def test_is_blocked_until_dependency_completes(self, db):
        tasks_mod.create_task(db, "Root", "test")
        tasks_mod.create_task(db, "First", "test", parent_id="root")
        tasks_mod.create_task(db, "Second", "test", parent_id="root", depends_on=["first"])
        assert tasks_mod.is_blocked(db, "second")
        tasks_mod.update_task(db, "first", state=TaskState.COMPLETED)
        assert not tasks_mod.is_blocked(db, "second")

    def test_add_and_remove_dependency(self, db):
        tasks_mod.create_task(db, "A", "test")
        tasks_mod.create_task(db, "B", "test")
        task = tasks_mod.add_dependency(db, "b", "a")
        assert task.depends_on == ["a"]
        task = tasks_mod.remove_dependency(db, "b", "a")
        assert task.depends_on == []

    def test_add_dependency_missing_target(self, db):
        tasks_mod.create_task(db, "A", "test")
        with pytest.raises(ValueError, match="Dependency task not found"):
            tasks_mod.add_dependency(db, "a", "ghost")

    def test_self_dependency_rejected(self, db):
        tasks_mod.create_task(db, "A", "test")
        with pytest.raises(ValueError, match="cycle"):
            tasks_mod.add_dependency(db, "a", "a")
        assert tasks_mod.get_task(db, "a").depends_on == []

    def test_mutual_dependency_rejected(self, db):
        tasks_mod.create_task(db, "A", "test")
        tasks_mod.create_task(db, "B", "test")
        tasks_mod.add_dependency(db, "a", "b")
        with pytest.raises(ValueError, match="cycle"):
            tasks_mod.add_dependency(db, "b", "a")
        assert tasks_mod.get_task(db, "b").depends_on == []

    def test_indirect_cycle_rejected(self, db):
        for title in ("A", "B", "C"):
            tasks_mod.create_task(db, title, "test")
        tasks_mod.add_dependency(db, "a", "b")
        tasks_mod.add_dependency(db, "b", "c")
        assert tasks_mod.would_create_cycle(db, "c", "a")
        with pytest.raises(ValueError, match="cycle"):
            tasks_mod.add_dependency(db, "c", "a")

    def test_shared_dependency_is_not_a_cycle(self, db):
        for title in ("A", "B", "C"):
            tasks_mod.create_task(db, title, "test")
        tasks_mod.add_dependency(db, "a", "c")
        tasks_mod.add_dependency(db, "b", "c")
        assert not tasks_mod.would_create_cycle(db, "a", "b")
        assert sorted(tasks_mod.add_dependency(db, "a", "b").depends_on) == ["b", "c"]

    def test_create_with_missing_dependency_raises(self, db):
        with pytest.raises(ValueError, match="Dependency task not found"):
            tasks_mod.create_task(db, "Lonely", "test", depends_on=["ghost"])
        assert tasks_mod.get_task(db, "lonely") is None


class TestReconciliationQueries:
    def test_top_level_needing_supervisors(self, db, accessor):
        tasks_mod.create_task(db, "Needs one", "test")
        tasks_mod.create_task(db, "Has one", "test")
        agents_mod.create_agent(db, AgentType.SUPERVISOR, "has-one")
        found = accessor.find_top_level_tasks_needing_supervisors()
        assert [t.id for t in found] == ["needs-one"]

    def test_crashed_supervisor_counts_as_missing(self, db, accessor):
        tasks_mod.create_task(db, "Epic", "test")
        sup = agents_mod.create_agent(db, AgentType.SUPERVISOR, "epic")
        agents_mod.mark_agent_crashed(db, sup.id)
        assert [t.id for t in accessor.find_top_level_tasks_needing_supervisors()] == ["epic"]

    def test_leaf_needing_workers(self, db, accessor):
        tasks_mod.create_task(db, "Epic", "test")
        tasks_mod.create_task(db, "Pending", "test", parent_id="epic")
        tasks_mod.create_task(db, "Blocked", "test", parent_id="epic")
        tasks_mod.create_task(db, "Orphaned", "test", parent_id="epic")
        tasks_mod.create_task(db, "Assigned", "test", parent_id="epic")
        tasks_mod.create_task(db, "Done", "test", parent_id="epic")
        tasks_mod.update_task(db, "blocked", state=TaskState.BLOCKED)
        tasks_mod.update_task(db, "orphaned", state=TaskState.IN_PROGRESS)
        worker = agents_mod.create_agent(db, AgentType.WORKER, "assigned")
        tasks_mod.update_task(
            db, "assigned", state=TaskState.IN_PROGRESS, assigned_agent_id=worker.id
        )
        tasks_mod.update_task(db, "done", state=TaskState.COMPLETED)

        found = {t.id for t in accessor.find_leaf_tasks_needing_workers()}
        assert found == {"pending", "blocked", "orphaned"}

    def test_missing_infrastructure(self, db, accessor):
        tasks_mod.create_task(db, "Epic", "test")
        tasks_mod.create_task(db, "Bare", "test", parent_id="epic")
        tasks_mod.create_task(db, "Built", "test", parent_id="epic")
        tasks_mod.update_task(db, "bare", state=TaskState.IN_PROGRESS)
        tasks_mod.update_task(
            db, "built", state=TaskState.IN_PROGRESS, branch_name="task/built"
        )
        assert [t.id for t in accessor.find_tasks_with_missing_infrastructure()] == ["bare"]

    def test_record_reconcile_failure_keeps_recent(self, db, accessor):
        tasks_mod.create_task(db, "Epic", "test")
        for i in range(12):
            accessor.record_reconcile_failure("epic", f"boom {i}", "reconcile_task")
        task = accessor.find_by_id("epic")
        assert len(task.reconcile_failures) == 10
        assert task.reconcile_failures[-1]["error"] == "boom 11"
        assert task.reconcile_failures[-1]["action"] == "reconcile_task"

    def test_mark_reconciled(self, db, accessor):
        tasks_mod.create_task(db, "Epic", "test")
        assert accessor.find_by_id("epic").last_reconciled_at is None
        accessor.mark_reconciled("epic")
        assert accessor.find_by_id("epic").last_reconciled_at is not None

