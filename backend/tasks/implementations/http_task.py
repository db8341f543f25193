"""HTTP Request task implementation.

Makes HTTP requests to external APIs/services with variable-substituted
url, headers and body, and fails when the response status reaches the
configured error threshold.
"""

import json
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from app.config import get_settings
from tasks.base_task import BaseTask, TaskResult

logger = structlog.get_logger(__name__)


def _validate_url(url: str) -> None:
    """Reject anything that is not an absolute http(s) URL.

    Raises:
        ValueError: If URL is unusable
    """
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme or '(none)'}. Only HTTP and HTTPS allowed.")
    if not parsed.hostname:
        raise ValueError("URL must have a valid hostname")


class HttpRequestTask(BaseTask):
    """Execute HTTP requests to external services.

    Config:
        url: Target URL (required)
        method: HTTP method — GET, POST, PUT, PATCH, DELETE (default: GET)
        headers: Dict of HTTP headers
        params: URL query parameters
        body: Request body (for POST/PUT/PATCH)
        body_type: "json" | "form" | "text" (default: json)
        timeout: Request timeout in seconds (default: HTTP_DEFAULT_TIMEOUT)
        follow_redirects: Whether to follow redirects (default: true)
        fail_on_status: Lowest status code treated as failure (default: 400)
    """

    task_type = "http_request"
    display_name = "HTTP Request"
    description = "Make HTTP requests to APIs and web services"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def execute(self, config: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> TaskResult:
        url = config.get("url")
        if not url:
            return TaskResult(success=False, error="Missing required config: url")

        try:
            _validate_url(url)
        except ValueError as e:
            return TaskResult(success=False, error=str(e))

        method = str(config.get("method", "GET")).upper()
        headers = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}
        params = config.get("params") or {}
        body = config.get("body")
        body_type = config.get("body_type", "json")
        timeout = config.get("timeout") or get_settings().HTTP_DEFAULT_TIMEOUT
        fail_on_status = int(config.get("fail_on_status", 400))

        kwargs: Dict[str, Any] = {
            "method": method,
            "url": url,
            "headers": headers,
            "params": params,
        }

        if body is not None and method in ("POST", "PUT", "PATCH", "DELETE"):
            if body_type == "json":
                kwargs["json"] = json.loads(body) if isinstance(body, str) else body
            elif body_type == "form":
                kwargs["data"] = body
            else:
                kwargs["content"] = str(body)

        try:
            async with httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=config.get("follow_redirects", True),
                transport=self._transport,
            ) as client:
                response = await client.request(**kwargs)
        except httpx.TimeoutException:
            return TaskResult(success=False, error=f"Request timed out after {timeout}s")
        except httpx.ConnectError as e:
            return TaskResult(success=False, error=f"Connection failed: {e}")
        except httpx.HTTPError as e:
            return TaskResult(success=False, error=f"HTTP request failed: {e}")

        try:
            response_data = response.json()
        except ValueError:
            response_data = response.text

        output = {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "response": response_data,
        }

        if response.status_code >= fail_on_status:
            return TaskResult(
                success=False,
                output=output,
                error=f"HTTP {response.status_code} from {method} {url}",
            )
        return TaskResult(success=True, output=output)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string", "description": "Target URL"},
                "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE"]},
                "headers": {"type": "object"},
                "params": {"type": "object"},
                "body": {"description": "Request body"},
                "body_type": {"type": "string", "enum": ["json", "form", "text"]},
                "timeout": {"type": "number"},
                "fail_on_status": {"type": "integer", "default": 400},
            },
        }


# Export for task registry
HTTP_TASK_TYPES = {
    "http_request": HttpRequestTask,
}
