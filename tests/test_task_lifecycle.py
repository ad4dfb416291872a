from __future__ import annotations

import allure
import pytest

from rulebook.errors import InvalidStateTransition, LockUnavailableError
from rulebook.tasks.lifecycle import TaskLifecycle
from rulebook.tasks.models import TaskStatus

pytestmark = [
    allure.epic("Task Management"),
    allure.feature("Lifecycle Transitions"),
]


class _RecordingRecorder:
    def __init__(self) -> None:
        self.transitions: list[tuple[str, str, str, str | None]] = []

    def record_transition(self, *, task_id, from_status, to_status, reason) -> None:
        self.transitions.append((task_id, from_status.value, to_status.value, reason))


def test_happy_path_records_each_transition(services, make_task) -> None:
    recorder = _RecordingRecorder()
    lifecycle = TaskLifecycle(services.store, recorder=recorder)
    make_task("add-user-auth")

    lifecycle.start("add-user-auth")
    lifecycle.complete("add-user-auth", run_succeeded=True)
    archived = lifecycle.archive("add-user-auth")

    assert archived.status == TaskStatus.ARCHIVED
    assert recorder.transitions == [
        ("add-user-auth", "pending", "in-progress", None),
        ("add-user-auth", "in-progress", "completed", None),
        ("add-user-auth", "completed", "archived", None),
    ]


def test_transitions_outside_the_table_are_rejected(services, make_task) -> None:
    make_task("add-user-auth")

    with pytest.raises(InvalidStateTransition) as error:
        services.lifecycle.complete("add-user-auth", run_succeeded=True)
    assert error.value.current == "pending"
    assert error.value.target == "completed"

    with pytest.raises(InvalidStateTransition):
        services.lifecycle.archive("add-user-auth")
    with pytest.raises(InvalidStateTransition):
        services.lifecycle.block("add-user-auth", reason="nope")


def test_start_requires_completed_dependencies(services, make_task) -> None:
    make_task("add-user-auth")
    make_task("add-payment", dependencies=("add-user-auth",))

    with pytest.raises(InvalidStateTransition, match="dependencies not completed: add-user-auth"):
        services.lifecycle.start("add-payment")

    services.lifecycle.start("add-user-auth")
    services.lifecycle.complete("add-user-auth", run_succeeded=True)
    assert services.lifecycle.start("add-payment").status == TaskStatus.IN_PROGRESS


def test_complete_guard_requires_successful_run(services, make_task) -> None:
    make_task("add-user-auth")
    services.lifecycle.start("add-user-auth")

    with pytest.raises(InvalidStateTransition, match="did not succeed"):
        services.lifecycle.complete("add-user-auth", run_succeeded=False)

    assert services.store.read("add-user-auth").status == TaskStatus.IN_PROGRESS


def test_complete_guard_requires_valid_content(services) -> None:
    services.store.create("add-user-auth")
    services.lifecycle.start("add-user-auth")

    with pytest.raises(InvalidStateTransition, match="validation reported"):
        services.lifecycle.complete("add-user-auth", run_succeeded=True)


def test_block_requires_reason_and_reset_returns_to_pending(services, make_task) -> None:
    make_task("add-user-auth")
    services.lifecycle.start("add-user-auth")

    with pytest.raises(InvalidStateTransition, match="blocking reason"):
        services.lifecycle.block("add-user-auth", reason="  ")

    blocked = services.lifecycle.block("add-user-auth", reason="needs API credentials")
    assert blocked.status == TaskStatus.BLOCKED
    assert blocked.status_reason == "needs API credentials"

    reset = services.lifecycle.reset("add-user-auth")
    assert reset.status == TaskStatus.PENDING
    assert reset.status_reason == "operator reset"


def test_fail_requires_exhausted_attempts(services, make_task) -> None:
    make_task("add-user-auth")
    services.lifecycle.start("add-user-auth")

    with pytest.raises(InvalidStateTransition, match="retry budget"):
        services.lifecycle.fail("add-user-auth", attempts_exhausted=False, reason="exit 1")

    failed = services.lifecycle.fail("add-user-auth", attempts_exhausted=True, reason="exit 1")
    assert failed.status == TaskStatus.FAILED
    assert services.lifecycle.reset("add-user-auth").status == TaskStatus.PENDING


def test_reset_refuses_pending_task(services, make_task) -> None:
    make_task("add-user-auth")

    with pytest.raises(InvalidStateTransition, match="Only failed, blocked or abandoned in-progress"):
        services.lifecycle.reset("add-user-auth")


def test_reset_recovers_in_progress_task_without_a_run_lease(services, make_task) -> None:
    make_task("add-user-auth")
    services.lifecycle.start("add-user-auth")

    with services.locks.lease("add-user-auth"), pytest.raises(LockUnavailableError):
        services.lifecycle.reset("add-user-auth")
    assert services.store.read("add-user-auth").status == TaskStatus.IN_PROGRESS

    reset = services.lifecycle.reset("add-user-auth")
    assert reset.status == TaskStatus.PENDING
    assert reset.status_reason == "operator reset of abandoned run"


def test_archived_task_accepts_no_transition(services, make_task) -> None:
    make_task("add-user-auth")
    services.lifecycle.start("add-user-auth")
    services.lifecycle.complete("add-user-auth", run_succeeded=True)
    services.lifecycle.archive("add-user-auth")

    for transition in (
        lambda: services.lifecycle.start("add-user-auth"),
        lambda: services.lifecycle.archive("add-user-auth"),
        lambda: services.lifecycle.reset("add-user-auth"),
    ):
        with pytest.raises(InvalidStateTransition):
            transition()


def test_transitions_are_written_to_execution_log(services, make_task) -> None:
    make_task("add-user-auth")

    services.lifecycle.start("add-user-auth")
    services.lifecycle.block("add-user-auth", reason="waiting on design review")

    transitions = [
        (record["from"], record["to"], record["reason"])
        for record in services.log.task_records("add-user-auth")
        if record["type"] == "transition"
    ]
    assert transitions == [
        ("pending", "in-progress", None),
        ("in-progress", "blocked", "waiting on design review"),
    ]
