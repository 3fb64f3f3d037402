from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping

from ..core import metrics
from ..core.logging import get_logger
from ..services.llm import CompletionProvider, CompletionRequest, ProviderError
from .catalog_store import ToolCatalog, ToolDefinition
from .exceptions import InvocationError, InvocationErrorKind
from .templates import render_template
from .validation import SchemaValidationError, ToolSchemaValidator, parse_structured_output, tool_schema_validator

logger = get_logger(name=__name__)

_REQUEST_OPTION_KEYS = ("temperature", "max_tokens")


@dataclass(slots=True)
class ToolInvocation:
    """Outcome of one gateway call. Only ``result`` outlives the owning task attempt."""

    tool_id: str
    model: str
    rendered_request: str
    raw_response: str
    result: Any
    latency_seconds: float


class ToolInvocationGateway:
    """Renders tool templates, calls the completion provider and validates the reply."""

    def __init__(
        self,
        *,
        catalog: ToolCatalog,
        provider: CompletionProvider,
        validator: ToolSchemaValidator | None = None,
    ) -> None:
        self._catalog = catalog
        self._provider = provider
        self._validator = validator or tool_schema_validator

    def resolve(self, tool_id: str) -> ToolDefinition:
        return self._catalog.get_tool(tool_id)

    async def invoke(self, tool_id: str, parameters: Mapping[str, Any], model: str | None = None) -> ToolInvocation:
        return await self.invoke_definition(self.resolve(tool_id), parameters, model)

    async def invoke_definition(
        self,
        tool: ToolDefinition,
        parameters: Mapping[str, Any],
        model: str | None = None,
    ) -> ToolInvocation:
        merged = {**tool.default_parameters, **parameters}
        missing = self._validator.missing_inputs(merged, tool.input_schema)
        if missing:
            self._fail(tool, "missing_parameter")
            raise InvocationError(
                InvocationErrorKind.MISSING_PARAMETER,
                f"Tool '{tool.tool_id}' requires parameters: {', '.join(missing)}",
                tool_id=tool.tool_id,
            )

        try:
            prompt = render_template(tool.template, merged, tool_id=tool.tool_id)
        except InvocationError as exc:
            self._fail(tool, exc.kind.value)
            raise

        request = CompletionRequest(
            prompt=prompt,
            model=model or tool.default_model or self._provider.default_model,
            system_prompt=merged.get("system_prompt") or tool.system_prompt,
            **{key: merged[key] for key in _REQUEST_OPTION_KEYS if merged.get(key) is not None},
        )

        started = time.perf_counter()
        try:
            raw = await self._provider.complete(request)
        except ProviderError as exc:
            kind = (
                InvocationErrorKind.TRANSIENT_PROVIDER_ERROR
                if exc.retryable
                else InvocationErrorKind.PERMANENT_PROVIDER_ERROR
            )
            self._fail(tool, kind.value, latency=time.perf_counter() - started)
            raise InvocationError(kind, str(exc), tool_id=tool.tool_id, retry_after=exc.retry_after) from exc
        latency = time.perf_counter() - started

        try:
            result = parse_structured_output(raw, tool.output_schema, validator=self._validator)
        except SchemaValidationError as exc:
            self._fail(tool, InvocationErrorKind.SCHEMA_MISMATCH.value, latency=latency)
            raise InvocationError(
                InvocationErrorKind.SCHEMA_MISMATCH,
                f"Response from '{tool.tool_id}' does not match its output schema: {exc}",
                tool_id=tool.tool_id,
            ) from exc

        metrics.record_tool_invocation(tool=tool.tool_id, outcome="success", latency=latency)
        logger.info(
            "tool_invocation_completed",
            tool=tool.tool_id,
            model=request.model,
            latency=round(latency, 4),
        )
        return ToolInvocation(
            tool_id=tool.tool_id,
            model=request.model,
            rendered_request=prompt,
            raw_response=raw,
            result=result,
            latency_seconds=latency,
        )

    def _fail(self, tool: ToolDefinition, outcome: str, *, latency: float | None = None) -> None:
        metrics.record_tool_invocation(tool=tool.tool_id, outcome=outcome, latency=latency)
        logger.warning("tool_invocation_failed", tool=tool.tool_id, outcome=outcome)
