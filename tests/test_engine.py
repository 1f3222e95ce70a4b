"""
工作流引擎测试
"""
import asyncio
import time
from unittest.mock import AsyncMock

import httpx
import pytest

from assistant_workflows.core import WorkflowEngine
from assistant_workflows.core.handlers import HttpRequestExecutor
from assistant_workflows.exceptions import (
    DisabledError, InvalidStateError, NotFoundError, StepHandlerError, WorkflowValidationError
)
from assistant_workflows.integrations import (
    EXECUTION_EVENTS, STEP_EVENTS, ToolDefinition, LLMProvider, LLMResponse
)
from assistant_workflows.models import (
    ExecutionStatus, StepStatus, StepType, WorkflowExecution, StepRecord, INTERRUPTED_ERROR
)
from assistant_workflows.storage import InMemoryExecutionRepository, InMemoryWorkflowRepository


def workflow(*steps, **extra):
    return {"name": extra.pop("name", "Test"), "steps": list(steps), **extra}


def step(step_id, step_type, **fields):
    return {"id": step_id, "type": step_type, "config": fields.pop("config", {}), **fields}


async def run(engine, definition, payload=None, owner_id="user-1"):
    workflow_id = await engine.create_workflow(definition, owner_id=owner_id)
    execution_id = await engine.execute_workflow(workflow_id, payload)
    return await engine.wait_for_execution(execution_id, timeout=5)


class TestStepWalk:
    """步骤遍历"""

    @pytest.mark.asyncio
    async def test_condition_true_path(self, engine, notifications, daily_digest_workflow):
        execution = await run(engine, daily_digest_workflow, {"count": 5})

        assert execution.status == ExecutionStatus.COMPLETED
        assert [r.step_id for r in execution.step_records] == ["summarize", "check", "notify", "done"]
        assert execution.output["check"] == {"result": True, "branch": "success"}

        sent = notifications.for_user("user-1")
        assert len(sent) == 1
        assert sent[0].content == "Summarize weather"

    @pytest.mark.asyncio
    async def test_condition_false_takes_failure_branch(self, engine, notifications, daily_digest_workflow):
        execution = await run(engine, daily_digest_workflow, {"count": 1})

        assert execution.status == ExecutionStatus.COMPLETED
        assert [r.step_id for r in execution.step_records] == ["summarize", "check", "quiet", "done"]
        assert notifications.notifications == []

        memories = await engine.memory_manager.search("report")
        assert memories and "weather" in memories[0].content

    @pytest.mark.asyncio
    async def test_condition_false_without_branch_continues(self, engine):
        execution = await run(engine, workflow(
            step("gate", "CONDITIONAL", config={"condition": "false"}),
            step("after", "DELAY", config={"delayMs": 1}),
        ))

        assert execution.status == ExecutionStatus.COMPLETED
        assert [r.step_id for r in execution.step_records] == ["gate", "after"]

    @pytest.mark.asyncio
    async def test_unparsable_condition_is_false(self, engine):
        execution = await run(engine, workflow(
            step("c", "CONDITIONAL", config={"condition": "{{variables.count}} >"}, on_failure="quiet"),
            step("loud", "DELAY", config={"delayMs": 1}),
            step("quiet", "DELAY", config={"delayMs": 1}),
        ))

        assert execution.status == ExecutionStatus.COMPLETED
        assert [r.step_id for r in execution.step_records] == ["c", "quiet"]
        assert execution.output["c"]["result"] is False
        assert "Unexpected end" in execution.output["c"]["error"]

    @pytest.mark.asyncio
    async def test_missing_variable_in_condition_continues(self, engine):
        execution = await run(engine, workflow(
            step("c", "CONDITIONAL", config={"condition": "{{variables.count}} > 3"}),
            step("d", "DELAY", config={"delayMs": 1}),
        ))

        assert execution.status == ExecutionStatus.COMPLETED
        assert [r.step_id for r in execution.step_records] == ["c", "d"]
        assert execution.output["c"] == {"result": False, "branch": "failure"}

    @pytest.mark.asyncio
    async def test_on_success_jump_skips_steps(self, engine):
        execution = await run(engine, workflow(
            step("a", "DELAY", config={"delayMs": 1}, on_success="c"),
            step("b", "DELAY", config={"delayMs": 1}),
            step("c", "DELAY", config={"delayMs": 1}),
        ))

        assert [r.step_id for r in execution.step_records] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_step_results_flow_into_later_steps(self, engine):
        execution = await run(engine, workflow(
            step("ask", "LLM_PROMPT", config={"prompt": "hello {{variables.who}}"}),
            step("echo", "LLM_PROMPT", config={"prompt": "{{stepResults.ask.content}}!"}),
        ), {"who": "world"})

        assert execution.output["echo"]["content"] == "hello world!"
        assert engine.llm_provider.calls[1]["messages"][-1]["content"] == "hello world!"

    @pytest.mark.asyncio
    async def test_delay_then_notification(self, engine, notifications):
        execution = await run(engine, workflow(
            step("wait", "DELAY", config={"delayMs": 10}),
            step("tell", "NOTIFICATION", config={"title": "Hi {{variables.userId}}"}),
        ))

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.output["wait"] == {"delayed": 10.0}
        assert notifications.for_user("user-1")[0].title == "Hi user-1"

    @pytest.mark.asyncio
    async def test_step_cap_fails_execution(self, engine):
        engine.max_steps_per_execution = 1
        execution = await run(engine, workflow(
            step("a", "DELAY", config={"delayMs": 1}),
            step("b", "DELAY", config={"delayMs": 1}),
        ))

        assert execution.status == ExecutionStatus.FAILED
        assert "exceeded" in execution.error


class TestRetries:
    """重试与失败分支"""

    @pytest.mark.asyncio
    async def test_retry_with_backoff(self, engine):
        calls = []

        async def flaky(step_def, context):
            calls.append(time.monotonic())
            if len(calls) < 3:
                raise StepHandlerError("temporary outage")
            return {"ok": True}

        engine.register_handler(StepType.HTTP_REQUEST, flaky)
        started = time.monotonic()
        execution = await run(engine, workflow(step(
            "call", "HTTP_REQUEST",
            config={"url": "https://example.com"},
            retry_config={"max_retries": 2, "delay_ms": 100, "backoff_multiplier": 2},
        )))

        assert execution.status == ExecutionStatus.COMPLETED
        assert len(calls) == 3
        assert time.monotonic() - started >= 0.29
        assert execution.step_records[0].attempts == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted_fails_execution(self, engine):
        def broken(step_def, context):
            raise StepHandlerError("boom")

        engine.register_handler("HTTP_REQUEST", broken)
        execution = await run(engine, workflow(step(
            "call", "HTTP_REQUEST",
            config={"url": "https://example.com"},
            retry_config={"max_retries": 1, "delay_ms": 1},
        )))

        assert execution.status == ExecutionStatus.FAILED
        assert "failed after 2 attempt(s)" in execution.error
        record = execution.step_records[0]
        assert record.status == StepStatus.FAILED
        assert record.error == "boom"
        assert record.attempts == 2

    @pytest.mark.asyncio
    async def test_failure_branch_recovers(self, engine, notifications):
        def broken(step_def, context):
            raise StepHandlerError("down")

        engine.register_handler(StepType.HTTP_REQUEST, broken)
        execution = await run(engine, workflow(
            step("call", "HTTP_REQUEST", config={"url": "https://x"}, on_failure="fallback",
                 on_success="done"),
            step("fallback", "NOTIFICATION", config={"title": "fallback"}),
            step("done", "DELAY", config={"delayMs": 1}),
        ))

        assert execution.status == ExecutionStatus.COMPLETED
        statuses = {r.step_id: r.status for r in execution.step_records}
        assert statuses == {
            "call": StepStatus.FAILED,
            "fallback": StepStatus.COMPLETED,
            "done": StepStatus.COMPLETED,
        }
        assert "call" not in execution.output


class TestHandlers:
    """内置步骤执行器"""

    @pytest.mark.asyncio
    async def test_llm_prompt_messages_and_options(self):
        llm = AsyncMock(spec=LLMProvider)
        llm.complete.return_value = LLMResponse(content="It will rain", tokens_used=12, model="small")

        engine = WorkflowEngine(llm_provider=llm)
        try:
            execution = await run(engine, workflow(
                step("ask", "LLM_PROMPT", config={
                    "systemPrompt": "You are terse.",
                    "prompt": "Weather in {{variables.city}}?",
                    "model": "small",
                    "maxTokens": 50,
                }),
                variables={"city": "Oslo"}
            ))
        finally:
            await engine.shutdown()

        llm.complete.assert_awaited_once_with(
            [
                {"role": "system", "content": "You are terse."},
                {"role": "user", "content": "Weather in Oslo?"},
            ],
            {"model": "small", "max_tokens": 50}
        )
        assert execution.output["ask"]["content"] == "It will rain"
        assert execution.output["ask"]["tokens_used"] == 12

    @pytest.mark.asyncio
    async def test_http_request(self, engine):
        seen = {}

        def handle(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.content.decode()
            return httpx.Response(201, json={"id": 42})

        engine.register_handler(
            StepType.HTTP_REQUEST, HttpRequestExecutor(transport=httpx.MockTransport(handle))
        )
        execution = await run(engine, workflow(step(
            "post", "HTTP_REQUEST",
            config={
                "url": "https://api.example.com/{{variables.path}}",
                "method": "post",
                "body": {"name": "{{variables.name}}"},
            },
        )), {"path": "items", "name": "milk"})

        assert execution.status == ExecutionStatus.COMPLETED
        assert seen["url"] == "https://api.example.com/items"
        assert seen["body"] == '{"name": "milk"}'
        assert execution.output["post"]["status"] == 201
        assert execution.output["post"]["body"] == {"id": 42}

    @pytest.mark.asyncio
    async def test_http_non_2xx_is_not_an_error(self, engine):
        engine.register_handler(StepType.HTTP_REQUEST, HttpRequestExecutor(
            transport=httpx.MockTransport(lambda request: httpx.Response(404, text="missing"))
        ))
        execution = await run(engine, workflow(step("get", "HTTP_REQUEST", config={"url": "https://x"})))

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.output["get"] == {
            "status": 404,
            "headers": execution.output["get"]["headers"],
            "body": "missing",
        }

    @pytest.mark.asyncio
    async def test_http_timeout_fails_step(self, engine):
        def handle(request):
            raise httpx.ReadTimeout("slow", request=request)

        engine.register_handler(StepType.HTTP_REQUEST, HttpRequestExecutor(
            timeout=0.5, transport=httpx.MockTransport(handle)
        ))
        execution = await run(engine, workflow(step("get", "HTTP_REQUEST", config={"url": "https://x"})))

        assert execution.status == ExecutionStatus.FAILED
        assert "timed out" in execution.step_records[0].error

    @pytest.mark.asyncio
    async def test_tool_execution(self, engine, tool_registry):
        async def add(params, context):
            return {"sum": params["a"] + params["b"], "user": context["user_id"]}

        await tool_registry.register_tool(
            ToolDefinition(
                tool_id="add",
                name="Add",
                parameters_schema={
                    "type": "object",
                    "required": ["a", "b"],
                    "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
                },
            ),
            add,
        )
        execution = await run(engine, workflow(
            step("sum", "TOOL_EXECUTION", config={"tool": "add", "input": {"a": 2, "b": 3}}),
        ))

        assert execution.output["sum"] == {"sum": 5, "user": "user-1"}

    @pytest.mark.asyncio
    async def test_tool_parameter_validation(self, engine, tool_registry):
        await tool_registry.register_tool(
            ToolDefinition(
                tool_id="add",
                name="Add",
                parameters_schema={"type": "object", "required": ["a"]},
            ),
            lambda params, context: params["a"],
        )
        execution = await run(engine, workflow(
            step("sum", "TOOL_EXECUTION", config={"tool": "add", "input": {}}),
        ))

        assert execution.status == ExecutionStatus.FAILED
        assert "Invalid parameters" in execution.step_records[0].error

    @pytest.mark.asyncio
    async def test_code_execution_delegates_to_sandbox_tool(self, engine, tool_registry):
        received = {}

        def sandbox(params, context):
            received.update(params)
            return {"stdout": "4"}

        await tool_registry.register_tool(ToolDefinition(tool_id="execute_code", name="Sandbox"), sandbox)
        execution = await run(engine, workflow(
            step("calc", "CODE_EXECUTION", config={"code": "print(2 + 2)", "input": {"x": "{{variables.x}}"}}),
        ), {"x": 7})

        assert execution.output["calc"] == {"stdout": "4"}
        assert received == {"code": "print(2 + 2)", "language": "python", "input": {"x": "7"}}

    @pytest.mark.asyncio
    async def test_code_execution_without_sandbox_fails(self, engine):
        execution = await run(engine, workflow(step("calc", "CODE_EXECUTION", config={"code": "1"})))
        assert execution.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_notification_requires_user(self, engine):
        execution = await run(
            engine, workflow(step("tell", "NOTIFICATION", config={"title": "x"})), owner_id=None
        )
        assert execution.status == ExecutionStatus.FAILED
        assert "userId" in execution.step_records[0].error

    @pytest.mark.asyncio
    async def test_memory_store_and_retrieve(self, engine):
        execution = await run(engine, workflow(
            step("save", "MEMORY_OPERATION", config={
                "operation": "store",
                "data": {"title": "groceries", "content": "buy {{variables.item}}"},
            }),
            step("find", "MEMORY_OPERATION", config={
                "operation": "retrieve",
                "data": {"query": "{{variables.item}}"},
            }),
        ), {"item": "oat milk"})

        assert execution.status == ExecutionStatus.COMPLETED
        results = execution.output["find"]["results"]
        assert results and results[0]["content"] == "buy oat milk"

    @pytest.mark.asyncio
    async def test_unknown_memory_operation_fails(self, engine):
        execution = await run(engine, workflow(
            step("bad", "MEMORY_OPERATION", config={"operation": "teleport"}),
        ))
        assert execution.status == ExecutionStatus.FAILED
        assert "Unknown memory operation" in execution.step_records[0].error


class TestLifecycle:
    """创建、取消与恢复"""

    @pytest.mark.asyncio
    async def test_execute_returns_before_steps_finish(self, engine):
        workflow_id = await engine.create_workflow(workflow(step("wait", "DELAY", config={"delayMs": 200})))
        execution_id = await engine.execute_workflow(workflow_id)

        execution = await engine.get_execution(execution_id)
        assert execution.status == ExecutionStatus.RUNNING
        assert execution_id in engine.running_executions()

        execution = await engine.wait_for_execution(execution_id, timeout=5)
        assert execution.status == ExecutionStatus.COMPLETED
        assert (await engine.get_workflow(workflow_id)).last_run_at is not None

    @pytest.mark.asyncio
    async def test_disable_during_run_survives_bookkeeping(self, event_bus):
        class RecordingWorkflowStorage(InMemoryWorkflowRepository):
            full_writes = 0

            async def update(self, workflow):
                self.full_writes += 1
                return await super().update(workflow)

        storage = RecordingWorkflowStorage()
        engine = WorkflowEngine(workflow_repository=storage, event_bus=event_bus)
        try:
            workflow_id = await engine.create_workflow(workflow(step("wait", "DELAY", config={"delayMs": 100})))
            execution_id = await engine.execute_workflow(workflow_id)
            await asyncio.sleep(0.02)
            await engine.set_workflow_enabled(workflow_id, False)

            execution = await engine.wait_for_execution(execution_id, timeout=5)
        finally:
            await engine.shutdown()

        assert execution.status == ExecutionStatus.COMPLETED
        stored = await engine.get_workflow(workflow_id)
        assert stored.is_enabled is False
        assert stored.last_run_at is not None
        assert storage.full_writes == 0

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_step(self, engine, notifications):
        workflow_id = await engine.create_workflow(workflow(
            step("wait", "DELAY", config={"delayMs": 200}),
            step("tell", "NOTIFICATION", config={"title": "too late"}),
        ), owner_id="user-1")
        execution_id = await engine.execute_workflow(workflow_id)
        await asyncio.sleep(0.05)

        cancelled = await engine.cancel_execution(execution_id)
        assert cancelled.status == ExecutionStatus.CANCELLED

        execution = await engine.wait_for_execution(execution_id, timeout=5)
        assert execution.status == ExecutionStatus.CANCELLED
        assert [r.step_id for r in execution.step_records] == ["wait"]
        assert notifications.notifications == []

    @pytest.mark.asyncio
    async def test_cancel_terminal_execution_rejected(self, engine):
        execution = await run(engine, workflow(step("a", "DELAY", config={"delayMs": 1})))
        with pytest.raises(InvalidStateError):
            await engine.cancel_execution(execution.id)

    @pytest.mark.asyncio
    async def test_disabled_and_missing_workflows(self, engine):
        workflow_id = await engine.create_workflow(workflow(step("a", "DELAY")))
        await engine.set_workflow_enabled(workflow_id, False)

        with pytest.raises(DisabledError):
            await engine.execute_workflow(workflow_id)
        with pytest.raises(NotFoundError):
            await engine.execute_workflow("missing")
        with pytest.raises(NotFoundError):
            await engine.get_execution("missing")

    @pytest.mark.asyncio
    async def test_invalid_definition_rejected(self, engine):
        with pytest.raises(WorkflowValidationError):
            await engine.create_workflow(workflow(step("a", "NOTIFICATION")))
        assert await engine.list_workflows() == []

    @pytest.mark.asyncio
    async def test_steps_snapshot_isolated_from_later_edits(self, engine):
        workflow_id = await engine.create_workflow(workflow(step("wait", "DELAY", config={"delayMs": 50})))
        execution_id = await engine.execute_workflow(workflow_id)

        stored = await engine.get_workflow(workflow_id)
        stored.steps[0].config["delayMs"] = 1
        await engine.workflow_repository.update(stored)

        execution = await engine.wait_for_execution(execution_id, timeout=5)
        assert execution.output["wait"] == {"delayed": 50.0}

    @pytest.mark.asyncio
    async def test_list_executions_newest_first(self, engine):
        workflow_id = await engine.create_workflow(workflow(step("a", "DELAY", config={"delayMs": 1})))
        first = await engine.execute_workflow(workflow_id)
        await engine.wait_for_execution(first, timeout=5)
        second = await engine.execute_workflow(workflow_id)
        await engine.wait_for_execution(second, timeout=5)

        executions = await engine.list_executions(workflow_id)
        assert [e.id for e in executions] == [second, first]
        completed = await engine.list_executions(workflow_id, status=ExecutionStatus.COMPLETED, limit=1)
        assert len(completed) == 1

    @pytest.mark.asyncio
    async def test_recover_interrupted_executions(self, engine):
        orphan = WorkflowExecution(workflow_id="wf-old")
        await engine.execution_repository.save(orphan)
        record = StepRecord(execution_id=orphan.id, step_id="s1", name="s1")
        await engine.execution_repository.save_step(record)

        assert await engine.recover_interrupted_executions() == 1

        recovered = await engine.get_execution(orphan.id)
        assert recovered.status == ExecutionStatus.FAILED
        assert recovered.error == INTERRUPTED_ERROR
        assert recovered.step_records[0].status == StepStatus.FAILED
        assert recovered.step_records[0].error == INTERRUPTED_ERROR

    @pytest.mark.asyncio
    async def test_persistence_failure_marks_execution_failed(self, event_bus):
        class FlakyStepStorage(InMemoryExecutionRepository):
            async def save_step(self, record):
                raise RuntimeError("disk full")

        engine = WorkflowEngine(execution_repository=FlakyStepStorage(), event_bus=event_bus)
        try:
            execution = await run(engine, workflow(step("a", "DELAY", config={"delayMs": 1})))
        finally:
            await engine.shutdown()

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == "disk full"

    @pytest.mark.asyncio
    async def test_shutdown_marks_running_executions_failed(self, engine):
        workflow_id = await engine.create_workflow(workflow(step("wait", "DELAY", config={"delayMs": 5000})))
        execution_id = await engine.execute_workflow(workflow_id)
        await asyncio.sleep(0.02)

        await engine.shutdown()

        execution = await engine.get_execution(execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert engine.running_executions() == []

    @pytest.mark.asyncio
    async def test_lifecycle_events_published(self, engine, event_bus):
        execution_events, step_events = [], []
        await event_bus.subscribe(EXECUTION_EVENTS, lambda e: execution_events.append(e.payload))
        await event_bus.subscribe(STEP_EVENTS, lambda e: step_events.append(e.payload))

        execution = await run(engine, workflow(step("a", "DELAY", config={"delayMs": 1})))

        assert [e["event_type"] for e in execution_events] == ["started", "completed"]
        assert all(e["execution_id"] == execution.id for e in execution_events)
        assert [e["event_type"] for e in step_events] == ["started", "completed"]
