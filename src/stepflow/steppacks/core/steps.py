"""
Core Steps - essential utility step implementations.

These steps provide basic graph functionality.
All are synchronous and run on scheduler worker threads.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from stepflow.sandbox.executor import CodeExecutor
from stepflow.step_sdk.basestep import BaseStep, ExecutionContext
from stepflow.step_sdk.errors import StepValidationError
from stepflow.step_sdk.http import HttpClient
from stepflow.step_sdk.items import InputBundle, Item, PortBundle


logger = logging.getLogger(__name__)


def _parse_json_param(value: Any, name: str, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise StepValidationError(f"Parameter '{name}' is not valid JSON: {e}") from e
    return value


def _set_path(target: Dict[str, Any], path: str, value: Any) -> None:
    """Assign a dotted path, creating intermediate objects."""
    keys = path.split(".")
    for key in keys[:-1]:
        child = target.get(key)
        if not isinstance(child, dict):
            child = target[key] = {}
        target = child
    target[keys[-1]] = value


class ManualTriggerStep(BaseStep):
    """
    Manual Trigger - start a graph manually.

    Emits the trigger's seed items, or one empty item when there are none.
    """

    type = "manualTrigger"
    version = 1

    description = {
        "displayName": "Manual Trigger",
        "name": "manualTrigger",
        "group": ["trigger"],
        "description": "Starts the graph when triggered manually",
        "inputs": [],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [],
    }

    is_trigger = True

    def execute(self, inputs: InputBundle, parameters: Dict[str, Any], ctx: ExecutionContext) -> PortBundle:
        items = inputs.first() or [item.clone() for item in ctx.seed_items]
        return {"main": items or [Item(payload={})]}


class NoOpStep(BaseStep):
    """
    No Operation - pass-through.

    Passes every input item through unchanged.
    """

    type = "noOp"
    version = 1

    description = {
        "displayName": "No Operation",
        "name": "noOp",
        "group": ["transform"],
        "description": "No operation - passes items through",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [],
    }

    def execute(self, inputs: InputBundle, parameters: Dict[str, Any], ctx: ExecutionContext) -> PortBundle:
        return {"main": [item.clone() for item in inputs.get("main", [])]}


class SetStep(BaseStep):
    """
    Set - set or modify payload fields.

    Values may use expressions, resolved per item. Dotted keys create
    nested objects unless dotNotation is off.
    """

    type = "set"
    version = 1

    description = {
        "displayName": "Set",
        "name": "set",
        "group": ["transform"],
        "description": "Sets values on items",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Mode",
                "name": "mode",
                "type": "options",
                "default": "manual",
                "options": [
                    {"name": "Manual", "value": "manual"},
                    {"name": "Raw JSON", "value": "raw"},
                ],
            },
            {
                "displayName": "Values",
                "name": "values",
                "type": "collection",
                "default": {},
                "displayOptions": {"show": {"mode": ["manual"]}},
            },
            {
                "displayName": "JSON Data",
                "name": "jsonData",
                "type": "json",
                "default": "{}",
                "displayOptions": {"show": {"mode": ["raw"]}},
            },
            {
                "displayName": "Keep Only Set",
                "name": "keepOnlySet",
                "type": "boolean",
                "default": False,
                "description": "If true, only keep the set values, discard others",
            },
            {
                "displayName": "Dot Notation",
                "name": "dotNotation",
                "type": "boolean",
                "default": True,
                "description": "Treat dotted keys as nested paths",
            },
        ],
    }

    def execute(self, inputs: InputBundle, parameters: Dict[str, Any], ctx: ExecutionContext) -> PortBundle:
        mode = ctx.get_parameter("mode", 0, "manual")
        keep_only_set = ctx.get_parameter("keepOnlySet", 0, False)
        dot_notation = ctx.get_parameter("dotNotation", 0, True)

        results = []
        for i, item in enumerate(inputs.get("main", [])):
            if mode == "raw":
                new_data = _parse_json_param(ctx.get_parameter("jsonData", i, "{}"), "jsonData", {})
            else:
                new_data = ctx.get_parameter("values", i, {}) or {}
            if not isinstance(new_data, dict):
                raise StepValidationError(
                    f"Set values must be an object, got {type(new_data).__name__}"
                )

            output: Dict[str, Any] = {} if keep_only_set else json.loads(json.dumps(item.json_payload()))
            for key, value in new_data.items():
                if dot_notation and "." in key:
                    _set_path(output, key, value)
                else:
                    output[key] = value
            results.append(Item(payload=output, tags=dict(item.tags)))

        return {"main": results}


class CodeStep(BaseStep):
    """
    Code - run user code against the input items.

    SECURITY: python runs in-process under the restricted sandbox;
    other languages run in a subprocess. Both are deadline-bounded.
    """

    type = "code"
    version = 1

    description = {
        "displayName": "Code",
        "name": "code",
        "group": ["transform"],
        "description": "Run custom code",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Language",
                "name": "language",
                "type": "options",
                "default": "python",
                "options": [
                    {"name": "Python", "value": "python"},
                    {"name": "JavaScript", "value": "javascript"},
                ],
            },
            {
                "displayName": "Mode",
                "name": "mode",
                "type": "options",
                "default": "runOnceForAllItems",
                "options": [
                    {"name": "Run Once for All Items", "value": "runOnceForAllItems"},
                    {"name": "Run Once for Each Item", "value": "runOnceForEachItem"},
                ],
            },
            {
                "displayName": "Code",
                "name": "code",
                "type": "code",
                "default": "return items",
                "required": True,
            },
            {
                "displayName": "Timeout (ms)",
                "name": "timeoutMs",
                "type": "number",
                "default": None,
                "description": "Execution deadline; the configured default when empty",
            },
        ],
    }

    def validate_parameters(self, parameters: Dict[str, Any]) -> List[str]:
        problems = super().validate_parameters(parameters)
        timeout = parameters.get("timeoutMs")
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            problems.append("Parameter 'timeoutMs' must be a positive number")
        return problems

    def execute(self, inputs: InputBundle, parameters: Dict[str, Any], ctx: ExecutionContext) -> PortBundle:
        # Code is taken verbatim; expressions are not substituted into it
        code = parameters.get("code", "return items")
        language = ctx.get_parameter("language", 0, "python")
        mode = ctx.get_parameter("mode", 0, "runOnceForAllItems")
        timeout_ms = ctx.get_parameter("timeoutMs", 0, None)
        timeout_s = timeout_ms / 1000.0 if timeout_ms else None

        executor = ctx.get_service("code_executor") or CodeExecutor(ctx.settings)
        items = inputs.get("main", [])

        def run(batch: List[Item]) -> List[Item]:
            return executor.run(
                language,
                code,
                batch,
                timeout_s=timeout_s,
                cancel_token=ctx.cancel_token,
                log=ctx.logger.info,
            )

        if mode == "runOnceForEachItem":
            results: List[Item] = []
            for item in items:
                ctx.check_cancelled()
                results.extend(run([item]))
            return {"main": results}
        return {"main": run(items)}


class HttpRequestStep(BaseStep):
    """
    HTTP Request - one request per input item.

    Transport failures and error statuses raise StepErrors whose kind
    drives retries (see stepflow.step_sdk.http).
    """

    type = "httpRequest"
    version = 1

    description = {
        "displayName": "HTTP Request",
        "name": "httpRequest",
        "group": ["input", "output"],
        "description": "Make HTTP requests",
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties = {
        "parameters": [
            {
                "displayName": "Method",
                "name": "method",
                "type": "options",
                "default": "GET",
                "options": [
                    {"name": "GET", "value": "GET"},
                    {"name": "POST", "value": "POST"},
                    {"name": "PUT", "value": "PUT"},
                    {"name": "DELETE", "value": "DELETE"},
                    {"name": "PATCH", "value": "PATCH"},
                    {"name": "HEAD", "value": "HEAD"},
                ],
            },
            {
                "displayName": "URL",
                "name": "url",
                "type": "string",
                "default": "",
                "required": True,
            },
            {
                "displayName": "Headers",
                "name": "headers",
                "type": "json",
                "default": "{}",
            },
            {
                "displayName": "Query Parameters",
                "name": "queryParameters",
                "type": "json",
                "default": "{}",
            },
            {
                "displayName": "Body",
                "name": "body",
                "type": "json",
                "default": None,
                "displayOptions": {"show": {"method": ["POST", "PUT", "PATCH"]}},
            },
            {
                "displayName": "Timeout",
                "name": "timeout",
                "type": "number",
                "default": None,
                "description": "Timeout in seconds; the configured default when empty",
            },
            {
                "displayName": "Ignore HTTP Errors",
                "name": "ignoreHttpErrors",
                "type": "boolean",
                "default": False,
                "description": "Emit error responses as items instead of failing",
            },
        ],
    }

    def execute(self, inputs: InputBundle, parameters: Dict[str, Any], ctx: ExecutionContext) -> PortBundle:
        results = []

        with HttpClient(
            timeout=getattr(ctx.settings, "http_timeout_s", None),
            allow_private_hosts=getattr(ctx.settings, "http_allow_private_hosts", False),
        ) as client:
            for i, item in enumerate(inputs.get("main", [])):
                ctx.check_cancelled()
                method = str(ctx.get_parameter("method", i, "GET")).upper()
                url = ctx.get_parameter("url", i, "")
                if not url:
                    raise StepValidationError("URL is required")
                headers = _parse_json_param(ctx.get_parameter("headers", i, "{}"), "headers", {})
                params = _parse_json_param(ctx.get_parameter("queryParameters", i, "{}"), "queryParameters", {})
                body = _parse_json_param(ctx.get_parameter("body", i, None), "body", None)

                response = client.send(
                    method,
                    url,
                    params=params or None,
                    json=body if method in ("POST", "PUT", "PATCH") else None,
                    headers={str(k): str(v) for k, v in headers.items()},
                    timeout=ctx.get_parameter("timeout", i, None),
                )
                if not ctx.get_parameter("ignoreHttpErrors", i, False):
                    response.raise_for_status()

                ctx.logger.info(f"{method} {url} -> {response.status_code}")
                results.append(Item(payload=response.to_payload(), tags=dict(item.tags)))

        return {"main": results}


__all__ = [
    "CodeStep",
    "HttpRequestStep",
    "ManualTriggerStep",
    "NoOpStep",
    "SetStep",
]
