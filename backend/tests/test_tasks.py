"""Tests for the built-in step handlers."""

import json

import httpx
import pytest

from app.config import Settings
from core.exceptions import StepExecutionError
from conftest import make_definition
from tasks.implementations.control_task import ConditionTask, DelayTask
from tasks.implementations.database_task import DatabaseQueryTask
from tasks.implementations.document_task import DocumentGenerationTask
from tasks.implementations.http_task import HttpRequestTask
from tasks.implementations.inline_code_task import InlineCodeTask
from tasks.implementations.notification_task import NotificationTask
from tasks.implementations.script_task import ScriptTask
from workflow.definitions import parse_definition
from workflow.interpolation import interpolate
from workflow.models import WorkflowInstance


def make_call(step_type: str, parameters: dict, variables: dict = None, **step_fields):
    """Build an (instance, step) pair the way the engine hands it to a handler."""
    definition = parse_definition(make_definition(
        [{"id": "s", "type": step_type, "parameters": parameters, **step_fields}],
        variables=variables or {},
    ))
    instance = WorkflowInstance.create("wf-test-1", definition)
    step = instance.steps[0]
    step.resolved_parameters = interpolate(step.parameters, instance.variables)
    return instance, step


@pytest.mark.unit
class TestScriptTask:

    @pytest.mark.asyncio
    async def test_command_output(self):
        result = await ScriptTask()(*make_call("script", {"command": "echo hello"}))
        assert result == {"exit_code": 0, "stdout": "hello", "stderr": ""}

    @pytest.mark.asyncio
    async def test_json_last_line_is_exposed(self):
        command = "echo working; echo '{\"count\": 3}'"
        result = await ScriptTask()(*make_call("script", {"command": command}))
        assert result["output"] == {"count": 3}

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_with_stderr(self):
        with pytest.raises(StepExecutionError) as exc:
            await ScriptTask()(*make_call("script", {"command": "echo oops >&2; exit 3"}))
        assert exc.value.message == "oops"
        assert exc.value.output["exit_code"] == 3

    @pytest.mark.asyncio
    async def test_nonzero_exit_without_stderr(self):
        with pytest.raises(StepExecutionError) as exc:
            await ScriptTask()(*make_call("script", {"command": "exit 4"}))
        assert exc.value.message == "Process exited with code 4"

    @pytest.mark.asyncio
    async def test_script_with_interpreter_and_args(self, tmp_path):
        script = tmp_path / "greet.sh"
        script.write_text('echo "from-file $1"\n')
        result = await ScriptTask()(*make_call(
            "script",
            {"script": str(script), "interpreter": "/bin/sh", "args": ["${who}"]},
            variables={"who": "ada"},
        ))
        assert result["stdout"] == "from-file ada"

    @pytest.mark.asyncio
    async def test_env_cwd_and_input(self, tmp_path):
        result = await ScriptTask()(*make_call(
            "script",
            {"command": 'echo "$GREETING"; pwd; cat', "env": {"GREETING": "hi"}, "cwd": str(tmp_path), "input": "piped"},
        ))
        lines = result["stdout"].splitlines()
        assert lines[0] == "hi"
        assert lines[1] == str(tmp_path)
        assert lines[2] == "piped"

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(StepExecutionError) as exc:
            await ScriptTask()(*make_call("script", {"command": "sleep 5", "timeout": 0.2}))
        assert "timed out" in exc.value.message

    @pytest.mark.asyncio
    async def test_zero_step_timeout_means_no_limit(self):
        result = await ScriptTask()(*make_call("script", {"command": "echo hi"}, timeout_seconds=0))
        assert result["stdout"] == "hi"

    @pytest.mark.asyncio
    async def test_zero_config_timeout_overrides_step_timeout(self):
        result = await ScriptTask()(*make_call(
            "script", {"command": "sleep 0.1; echo done", "timeout": 0}, timeout_seconds=0.01,
        ))
        assert result["stdout"] == "done"

    @pytest.mark.asyncio
    async def test_missing_command(self):
        with pytest.raises(StepExecutionError):
            await ScriptTask()(*make_call("script", {}))


@pytest.mark.unit
class TestHttpRequestTask:

    @staticmethod
    def _task(handler):
        return HttpRequestTask(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_get_with_interpolated_url_and_params(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"ok": True})

        result = await self._task(handler)(*make_call(
            "http_request",
            {
                "url": "https://${host}/items",
                "params": {"q": "${term}"},
                "headers": {"Authorization": "Bearer ${api_token}"},
            },
            variables={"host": "api.test", "term": "tea", "api_token": "t0k"},
        ))

        assert result["status_code"] == 200
        assert result["response"] == {"ok": True}
        assert seen["url"] == "https://api.test/items?q=tea"
        assert seen["auth"] == "Bearer t0k"

    @pytest.mark.asyncio
    async def test_post_json_body(self):
        received = {}

        def handler(request: httpx.Request):
            received.update(json.loads(request.content))
            return httpx.Response(201, json={"id": 9})

        result = await self._task(handler)(*make_call(
            "http_request",
            {"url": "https://api.test/items", "method": "post", "body": {"name": "${name}"}},
            variables={"name": "kettle"},
        ))

        assert received == {"name": "kettle"}
        assert result["status_code"] == 201

    @pytest.mark.asyncio
    async def test_text_response(self):
        result = await self._task(lambda request: httpx.Response(200, text="pong"))(
            *make_call("http_request", {"url": "https://api.test/ping"})
        )
        assert result["response"] == "pong"

    @pytest.mark.asyncio
    async def test_error_status_fails_step(self):
        with pytest.raises(StepExecutionError) as exc:
            await self._task(lambda request: httpx.Response(503, text="down"))(
                *make_call("http_request", {"url": "https://api.test/x"})
            )
        assert exc.value.message == "HTTP 503 from GET https://api.test/x"
        assert exc.value.output["status_code"] == 503

    @pytest.mark.asyncio
    async def test_fail_on_status_threshold(self):
        result = await self._task(lambda request: httpx.Response(404))(
            *make_call("http_request", {"url": "https://api.test/x", "fail_on_status": 500})
        )
        assert result["status_code"] == 404

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(StepExecutionError) as exc:
            await self._task(handler)(*make_call("http_request", {"url": "https://api.test/x"}))
        assert exc.value.message.startswith("Connection failed")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["ftp://files.test/x", "not a url", "https:///nohost"])
    async def test_rejects_bad_urls(self, url):
        with pytest.raises(StepExecutionError):
            await self._task(lambda request: httpx.Response(200))(*make_call("http_request", {"url": url}))


@pytest.mark.unit
class TestDatabaseQueryTask:

    @pytest.mark.asyncio
    async def test_write_then_read(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'test.db'}"
        task = DatabaseQueryTask()
        try:
            await task(*make_call("database_query", {
                "connection_url": url,
                "query": "CREATE TABLE people (name TEXT, age INTEGER)",
            }))
            inserted = await task(*make_call("database_query", {
                "connection_url": url,
                "query": "INSERT INTO people (name, age) VALUES (:name, :age)",
                "params": {"name": "${who}", "age": 36},
            }, variables={"who": "Ada"}))
            selected = await task(*make_call("database_query", {
                "connection_url": url,
                "query": "SELECT name, age FROM people WHERE age > :min_age",
                "params": {"min_age": 18},
            }))
        finally:
            task.dispose()

        assert inserted == {"row_count": 1}
        assert selected == {"rows": [{"name": "Ada", "age": 36}], "row_count": 1}

    @pytest.mark.asyncio
    async def test_max_rows(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'rows.db'}"
        task = DatabaseQueryTask()
        try:
            result = await task(*make_call("database_query", {
                "connection_url": url,
                "query": "WITH RECURSIVE n(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM n WHERE x < 10) SELECT x FROM n",
                "max_rows": 3,
            }))
        finally:
            task.dispose()
        assert result["row_count"] == 3

    @pytest.mark.asyncio
    async def test_bad_sql_fails(self, tmp_path):
        task = DatabaseQueryTask()
        try:
            with pytest.raises(StepExecutionError) as exc:
                await task(*make_call("database_query", {
                    "connection_url": f"sqlite:///{tmp_path / 'bad.db'}",
                    "query": "SELECT * FROM missing_table",
                }))
        finally:
            task.dispose()
        assert exc.value.message.startswith("Query failed")


@pytest.mark.unit
class TestInlineCodeTask:

    @pytest.mark.asyncio
    async def test_result_binding(self):
        result = await InlineCodeTask()(*make_call(
            "inline-code",
            {"code": "result = {'doubled': value * 2, 'size': len(variables)}"},
            variables={"value": 21},
        ))
        assert result == {"doubled": 42, "size": 1}

    @pytest.mark.asyncio
    async def test_preloaded_modules_and_import(self):
        code = "import json\nresult = json.dumps({'pi': round(math.pi, 2)})"
        result = await InlineCodeTask()(*make_call("inline-code", {"code": code}))
        assert result == '{"pi": 3.14}'

    @pytest.mark.asyncio
    async def test_script_alias_and_inputs(self):
        result = await InlineCodeTask()(*make_call(
            "inline-code", {"script": "result = greeting + '!'", "inputs": {"greeting": "hi"}},
        ))
        assert result == "hi!"

    @pytest.mark.asyncio
    async def test_variables_are_a_copy(self):
        instance, step = make_call(
            "inline-code", {"code": "items.append(4)\nresult = len(items)"}, variables={"items": [1, 2, 3]},
        )
        result = await InlineCodeTask()(instance, step)
        assert result == 4
        assert instance.variables["items"] == [1, 2, 3]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["import os", "open('/etc/passwd')", "eval('1')"])
    async def test_restricted(self, code):
        with pytest.raises(StepExecutionError):
            await InlineCodeTask()(*make_call("inline-code", {"code": code}))

    @pytest.mark.asyncio
    async def test_syntax_error(self):
        with pytest.raises(StepExecutionError) as exc:
            await InlineCodeTask()(*make_call("inline-code", {"code": "result = ("}))
        assert exc.value.message.startswith("Syntax error")

    @pytest.mark.asyncio
    async def test_runtime_error_message(self):
        with pytest.raises(StepExecutionError) as exc:
            await InlineCodeTask()(*make_call("inline-code", {"code": "result = 1 / 0"}))
        assert exc.value.message.startswith("ZeroDivisionError")


@pytest.mark.unit
class TestConditionTask:

    @pytest.mark.asyncio
    async def test_true_and_false_values(self):
        params = {"condition": "n > 50", "true_value": {"result": "high"}, "false_value": {"result": "low"}}
        assert await ConditionTask()(*make_call("condition", params, variables={"n": 73})) == {"result": "high"}
        assert await ConditionTask()(*make_call("condition", params, variables={"n": 7})) == {"result": "low"}

    @pytest.mark.asyncio
    async def test_camel_case_aliases(self):
        params = {"condition": "ok", "trueValue": "yes", "falseValue": "no"}
        assert await ConditionTask()(*make_call("condition", params, variables={"ok": True})) == "yes"

    @pytest.mark.asyncio
    async def test_defaults_to_booleans(self):
        assert await ConditionTask()(*make_call("condition", {"condition": "1 == 1"})) is True
        assert await ConditionTask()(*make_call("condition", {"condition": "broken ("})) is False

    @pytest.mark.asyncio
    async def test_missing_condition(self):
        with pytest.raises(StepExecutionError):
            await ConditionTask()(*make_call("condition", {}))


@pytest.mark.unit
class TestDelayTask:

    @pytest.mark.asyncio
    async def test_sums_units(self):
        result = await DelayTask()(*make_call("delay", {"seconds": 0.01, "minutes": 0, "hours": 0}))
        assert result == {"delayed_seconds": 0.01}

    @pytest.mark.asyncio
    async def test_capped_by_settings(self, monkeypatch):
        monkeypatch.setattr(
            "tasks.implementations.control_task.get_settings",
            lambda: Settings(_env_file=None, MAX_DELAY_SECONDS=0.02),
        )
        result = await DelayTask()(*make_call("delay", {"minutes": 5}))
        assert result == {"delayed_seconds": 0.02}

    @pytest.mark.asyncio
    async def test_negative_or_invalid(self):
        with pytest.raises(StepExecutionError):
            await DelayTask()(*make_call("delay", {"seconds": -1}))
        with pytest.raises(StepExecutionError):
            await DelayTask()(*make_call("delay", {"seconds": "soon"}))


@pytest.mark.unit
class TestNotificationTask:

    @pytest.mark.asyncio
    async def test_sends_through_manager(self, notification_manager, capturing_channel):
        result = await NotificationTask(manager=notification_manager)(*make_call(
            "notification", {"message": "${n} is high", "priority": "high"}, variables={"n": 73},
        ))

        sent = capturing_channel.sent[0]
        assert sent.message == "73 is high"
        assert sent.title == "Test workflow"
        assert sent.metadata["instance_id"] == "wf-test-1"
        assert sent.metadata["workflow_id"] == "wf-test"
        assert result["notification_channel"] == "log"
        assert result["notification_delivered_at"]

    @pytest.mark.asyncio
    async def test_missing_message(self, notification_manager):
        with pytest.raises(StepExecutionError):
            await NotificationTask(manager=notification_manager)(*make_call("notification", {}))

    @pytest.mark.asyncio
    async def test_unconfigured_channel_fails(self, notification_manager):
        with pytest.raises(StepExecutionError) as exc:
            await NotificationTask(manager=notification_manager)(*make_call(
                "notification", {"message": "hi", "channel": "webhook"},
            ))
        assert "Channel not configured: webhook" in exc.value.message

    @pytest.mark.asyncio
    async def test_unknown_channel_fails(self, notification_manager):
        with pytest.raises(StepExecutionError):
            await NotificationTask(manager=notification_manager)(*make_call(
                "notification", {"message": "hi", "channel": "pigeon"},
            ))


@pytest.mark.unit
class TestDocumentGenerationTask:

    @pytest.mark.asyncio
    async def test_inline_template(self, tmp_path):
        target = tmp_path / "out" / "report.txt"
        result = await DocumentGenerationTask()(*make_call(
            "document_generation",
            {"template": "Total: {{ total }} for {{ who }}", "output_path": str(target), "context": {"who": "ops"}},
            variables={"total": 73},
        ))

        assert target.read_text() == "Total: 73 for ops"
        assert result == {"document_path": str(target), "document_size": len("Total: 73 for ops")}

    @pytest.mark.asyncio
    async def test_template_file(self, tmp_path):
        template = tmp_path / "letter.j2"
        template.write_text("Dear {{ name }},\n{% for i in items %}- {{ i }}\n{% endfor %}")
        target = tmp_path / "letter.txt"
        await DocumentGenerationTask()(*make_call(
            "document_generation",
            {"template_path": str(template), "output_path": str(target)},
            variables={"name": "Ada", "items": ["a", "b"]},
        ))
        assert target.read_text() == "Dear Ada,\n- a\n- b\n"

    @pytest.mark.asyncio
    async def test_relative_path_uses_output_dir(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            "tasks.implementations.document_task.get_settings",
            lambda: Settings(_env_file=None, DOCUMENT_OUTPUT_DIR=str(tmp_path / "docs")),
        )
        result = await DocumentGenerationTask()(*make_call(
            "document_generation", {"template": "x", "output_path": "r.txt"},
        ))
        assert result["document_path"] == str(tmp_path / "docs" / "r.txt")

    @pytest.mark.asyncio
    async def test_undefined_variable_fails(self, tmp_path):
        with pytest.raises(StepExecutionError) as exc:
            await DocumentGenerationTask()(*make_call(
                "document_generation", {"template": "{{ nope }}", "output_path": str(tmp_path / "x.txt")},
            ))
        assert exc.value.message.startswith("Template rendering failed")

    @pytest.mark.asyncio
    async def test_missing_output_path(self):
        with pytest.raises(StepExecutionError):
            await DocumentGenerationTask()(*make_call("document_generation", {"template": "x"}))
