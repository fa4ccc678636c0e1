import sys
import time

import pytest

from agent_builder.errors import WorkerFailure, WorkerTimeoutError
from agent_builder.invoker import InvocationContext, LocalWorkerInvoker, SubprocessWorkerInvoker
from agent_builder.models import ArtifactType, Project, WorkerPayload, WorkerResult
from agent_builder.workers import REFERENCE_WORKERS

ECHO_WORKER = """
import json, sys
payload = json.load(sys.stdin)
print(json.dumps({
    "success": True,
    "artifacts": [{"artifact_type": "SRS_DOCUMENT", "location": "file:///srs/" + payload["project_id"]}],
}))
"""


def _payload() -> WorkerPayload:
    project = Project(project_id="p1", owner_id="owner-1", name="Todo", request="Build a todo app")
    return WorkerPayload(project_id="p1", project=project, task_id="t1")


def test_local_invoker_runs_reference_worker() -> None:
    progress: list[int] = []
    with LocalWorkerInvoker(REFERENCE_WORKERS) as invoker:
        context = InvocationContext.with_timeout("product_manager", 5, progress_callback=progress.append)
        result = invoker.invoke("product_manager", _payload(), context)
    assert result.success is True
    assert result.artifacts[0].artifact_type == ArtifactType.SRS_DOCUMENT
    assert progress == [50]


def test_local_invoker_unknown_worker() -> None:
    with LocalWorkerInvoker({}) as invoker:
        with pytest.raises(WorkerFailure):
            invoker.invoke("qa_engineer", _payload(), InvocationContext.with_timeout("qa_engineer", 5))


def test_local_invoker_wraps_worker_exceptions() -> None:
    def broken(payload: WorkerPayload, context: InvocationContext) -> WorkerResult:
        raise KeyError("template")

    with LocalWorkerInvoker({"broken": broken}) as invoker:
        with pytest.raises(WorkerFailure) as excinfo:
            invoker.invoke("broken", _payload(), InvocationContext.with_timeout("broken", 5))
    assert excinfo.value.worker_name == "broken"


def test_local_invoker_accepts_plain_dict_results() -> None:
    def plain(payload: WorkerPayload, context: InvocationContext) -> dict:
        return {"success": False, "error_message": "nope", "artifacts": [{"artifact_type": "SOURCE_CODE", "location": "x"}]}

    with LocalWorkerInvoker({"plain": plain}) as invoker:
        result = invoker.invoke("plain", _payload(), InvocationContext.with_timeout("plain", 5))
    assert result.success is False
    assert result.artifacts == []


def test_local_invoker_deadline_sets_cancel_signal() -> None:
    def slow(payload: WorkerPayload, context: InvocationContext) -> WorkerResult:
        context.cancel_event.wait(5)
        return WorkerResult(success=True)

    context = InvocationContext.with_timeout("slow", 0.2)
    with LocalWorkerInvoker({"slow": slow}) as invoker:
        started = time.monotonic()
        with pytest.raises(WorkerTimeoutError):
            invoker.invoke("slow", _payload(), context)
    assert time.monotonic() - started < 4
    assert context.cancelled is True


def test_progress_callback_errors_are_not_raised() -> None:
    def failing_callback(_progress: int) -> None:
        raise RuntimeError("store down")

    context = InvocationContext.with_timeout("w", 5, progress_callback=failing_callback)
    context.report_progress(10)


def test_subprocess_invoker_round_trip() -> None:
    invoker = SubprocessWorkerInvoker({"echo": [sys.executable, "-c", ECHO_WORKER]})
    result = invoker.invoke("echo", _payload(), InvocationContext.with_timeout("echo", 30))
    assert result.success is True
    assert result.artifacts[0].location == "file:///srs/p1"


def test_subprocess_invoker_non_zero_exit() -> None:
    invoker = SubprocessWorkerInvoker({"crash": [sys.executable, "-c", "import sys; sys.exit(3)"]})
    with pytest.raises(WorkerFailure) as excinfo:
        invoker.invoke("crash", _payload(), InvocationContext.with_timeout("crash", 30))
    assert "status 3" in str(excinfo.value)


def test_subprocess_invoker_invalid_output() -> None:
    invoker = SubprocessWorkerInvoker({"chatty": [sys.executable, "-c", "print('hello')"]})
    with pytest.raises(WorkerFailure):
        invoker.invoke("chatty", _payload(), InvocationContext.with_timeout("chatty", 30))


def test_subprocess_invoker_timeout() -> None:
    invoker = SubprocessWorkerInvoker({"sleepy": [sys.executable, "-c", "import time; time.sleep(10)"]})
    context = InvocationContext.with_timeout("sleepy", 0.5)
    with pytest.raises(WorkerTimeoutError):
        invoker.invoke("sleepy", _payload(), context)
    assert context.cancelled is True
