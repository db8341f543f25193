"""Script execution task.

Spawns an external process, captures stdout/stderr and the exit code, and
fails the step on a nonzero exit.
"""

import asyncio
import json
import os
from typing import Any, Dict, Optional

import structlog

from app.config import get_settings
from tasks.base_task import BaseTask, TaskResult

logger = structlog.get_logger(__name__)


class ScriptTask(BaseTask):
    """Run a shell command or a script file.

    Config:
        command: Shell command string (run through SCRIPT_SHELL)
        script: Path to a script file (alternative to command)
        args: Arguments passed to the script
        interpreter: Program used to run the script (e.g. "python3", "bash")
        cwd: Working directory
        env: Extra environment variables
        input: Text written to the process stdin
        timeout: Seconds before the process is killed (default: the step's
            timeout_seconds). 0 means no limit
    """

    task_type = "script"
    display_name = "Script"
    description = "Run an external command or script and capture its output"

    async def execute(self, config: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> TaskResult:
        command = config.get("command")
        script = config.get("script")
        if not command and not script:
            return TaskResult(success=False, error="Missing required config: command or script")

        step = (context or {}).get("step")
        timeout = config.get("timeout")
        if timeout is None and step is not None:
            timeout = step.timeout_seconds
        if timeout is not None:
            # 0 disables the limit
            timeout = float(timeout) or None
        env = {**os.environ, **{k: str(v) for k, v in (config.get("env") or {}).items()}}
        cwd = config.get("cwd") or None
        stdin_data = config.get("input")

        try:
            if command:
                process = await asyncio.create_subprocess_shell(
                    command,
                    stdin=asyncio.subprocess.PIPE if stdin_data is not None else None,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                    executable=config.get("shell") or get_settings().SCRIPT_SHELL,
                )
            else:
                argv = [str(a) for a in (config.get("args") or [])]
                interpreter = config.get("interpreter")
                program = [interpreter, script] if interpreter else [script]
                process = await asyncio.create_subprocess_exec(
                    *program,
                    *argv,
                    stdin=asyncio.subprocess.PIPE if stdin_data is not None else None,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
        except OSError as e:
            return TaskResult(success=False, error=f"Failed to start process: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(
                    stdin_data.encode("utf-8") if isinstance(stdin_data, str) else stdin_data
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return TaskResult(success=False, error=f"Script timed out after {timeout}s")

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()

        output = {
            "exit_code": process.returncode,
            "stdout": stdout_text,
            "stderr": stderr_text,
        }

        # A JSON object on the last line is exposed as structured output
        if stdout_text:
            try:
                parsed = json.loads(stdout_text.splitlines()[-1])
                if isinstance(parsed, dict):
                    output["output"] = parsed
            except json.JSONDecodeError:
                pass

        if process.returncode != 0:
            return TaskResult(
                success=False,
                output=output,
                error=stderr_text or f"Process exited with code {process.returncode}",
            )
        return TaskResult(success=True, output=output)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command"},
                "script": {"type": "string", "description": "Script path"},
                "args": {"type": "array", "items": {"type": "string"}},
                "interpreter": {"type": "string"},
                "cwd": {"type": "string"},
                "env": {"type": "object"},
                "input": {"type": "string"},
                "timeout": {"type": "number"},
            },
        }


# Export for task registry
SCRIPT_TASK_TYPES = {
    "script": ScriptTask,
}
