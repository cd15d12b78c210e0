"""
Plan stream controller: one incremental plan generation at a time.

The generation service streams server-sent events whose ``data:`` payloads
are JSON frames::

    data: {"type":"text-delta","delta":"## Implementation Plan\\n"}
    data: {"type":"tool-input-start","toolCallId":"c1","toolName":"read_file"}
    data: {"type":"tool-input-available","toolCallId":"c1","toolName":"read_file","input":{"path":"README.md"}}
    data: {"type":"finish","finishReason":"stop"}
    data: [DONE]

The controller folds these frames into a ``PlanStreamState`` and surfaces
them as ``PlanStreamEvent`` values. It never persists anything: the caller
saves ``state.content`` as a revision when ``state.finished`` is true.

Starting a new generation cancels the one in flight. Cancelling aborts the
HTTP request; partial content stays readable on the old state object.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from typing import Any

import structlog

from taskrelay.engine.classifier import DEFAULT_MARKERS, WorkerMarkers, detect_content_type
from taskrelay.enums import ContentType
from taskrelay.exceptions import UpstreamError
from taskrelay.models.domain import PlanStreamEvent, PlanStreamRequest, PlanStreamState
from taskrelay.providers.plan_stream import PlanStreamClient

log = structlog.get_logger(__name__)

DONE_SENTINEL = "[DONE]"
INCOMPLETE_STREAM_ERROR = "Stream ended before completion"

EventCallback = Callable[[PlanStreamEvent], Any]


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Group SSE lines into events and yield each event's data payload.

    Multiple ``data:`` lines of one event are joined with newlines. Comment
    lines and fields other than ``data`` are ignored.
    """
    data_lines: list[str] = []
    async for line in lines:
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            value = line[len("data:") :]
            data_lines.append(value[1:] if value.startswith(" ") else value)
    if data_lines:
        yield "\n".join(data_lines)


def tool_label(tool_name: str | None, path: str | None = None) -> str:
    """Progress label for a tool call, refined once its path is known."""
    if tool_name == "read_file":
        return f"Reading {path}..." if path else "Reading file..."
    if tool_name == "list_directory":
        return f"Listing {path}..." if path else "Listing directory..."
    return f"Running {tool_name or 'tool'}..."


class _Generation:
    """Fold frames of one generation into its state."""

    def __init__(self, state: PlanStreamState, markers: WorkerMarkers) -> None:
        self.state = state
        self.markers = markers
        self.tool_ids: list[str | None] = []

    def apply(self, payload: str) -> PlanStreamEvent | None:
        try:
            frame = json.loads(payload)
        except json.JSONDecodeError:
            log.warning("plan_stream_frame_invalid", payload=payload[:200])
            return None
        if not isinstance(frame, dict):
            return None

        frame_type = frame.get("type")
        if frame_type == "text-delta":
            return self._text_delta(frame.get("delta") or "")
        if frame_type == "tool-input-start":
            return self._tool_start(frame.get("toolCallId"), frame.get("toolName"))
        if frame_type == "tool-input-available":
            tool_input = frame.get("input") or {}
            path = tool_input.get("path") if isinstance(tool_input, dict) else None
            return self._tool_resolved(frame.get("toolCallId"), frame.get("toolName"), path)
        if frame_type == "error":
            return self.fail(frame.get("errorText") or "Generation failed")
        if frame_type == "finish":
            self.state.finished = True
            self.state.finish_reason = frame.get("finishReason")
            return PlanStreamEvent(type="finish", finish_reason=self.state.finish_reason)
        return None

    def _text_delta(self, delta: str) -> PlanStreamEvent:
        self.state.content += delta
        if self.state.content_type == ContentType.UNKNOWN:
            self.state.content_type = detect_content_type(self.state.content, self.markers)
        return PlanStreamEvent(type="text-delta", text=delta)

    def _tool_start(self, call_id: str | None, tool_name: str | None) -> PlanStreamEvent:
        label = tool_label(tool_name)
        self.state.tool_calls.append(label)
        self.tool_ids.append(call_id)
        return PlanStreamEvent(type="tool-call-start", label=label, tool_name=tool_name)

    def _tool_resolved(self, call_id: str | None, tool_name: str | None, path: str | None) -> PlanStreamEvent:
        label = tool_label(tool_name, path)
        if call_id is not None and call_id in self.tool_ids:
            index = self.tool_ids.index(call_id)
        elif self.tool_ids:
            index = len(self.tool_ids) - 1
        else:
            self.state.tool_calls.append(label)
            self.tool_ids.append(call_id)
            index = len(self.tool_ids) - 1
        self.state.tool_calls[index] = label
        return PlanStreamEvent(type="tool-call-resolved", label=label, tool_name=tool_name)

    def fail(self, message: str) -> PlanStreamEvent:
        self.state.error = message
        self.state.finished = False
        return PlanStreamEvent(type="error", error=message)


class PlanStreamController:
    """Drive plan generations against the streaming service.

    Attributes:
        state: State of the current or most recent generation
    """

    def __init__(self, client: PlanStreamClient, markers: WorkerMarkers = DEFAULT_MARKERS) -> None:
        self.client = client
        self.markers = markers
        self.state = PlanStreamState()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_generating(self) -> bool:
        return self._task is not None and not self._task.done()

    async def generate(self, request: PlanStreamRequest, on_event: EventCallback | None = None) -> PlanStreamState:
        """Run one generation to completion, error, or cancellation.

        Args:
            request: Generation input
            on_event: Called synchronously with every surfaced event

        Returns:
            The generation's final state. ``cancelled`` is set when another
            generation or ``cancel()`` superseded it.
        """
        task, state = await self._start(request, on_event)
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        return state

    async def stream(self, request: PlanStreamRequest) -> AsyncIterator[PlanStreamEvent]:
        """Run one generation and yield its events as they arrive.

        Leaving the iteration early cancels the generation.
        """
        queue: asyncio.Queue[PlanStreamEvent | None] = asyncio.Queue()
        task, _ = await self._start(request, queue.put_nowait)
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            if not task.done():
                task.cancel()

    async def cancel(self) -> bool:
        """Abort the generation in flight.

        Returns:
            True if a generation was running
        """
        task = self._task
        if task is None or task.done():
            return False

        state = self.state
        task.cancel()
        await asyncio.wait({task})
        state.cancelled = True
        state.is_generating = False
        state.finished = False
        log.info("plan_stream_cancelled", content_length=len(state.content))
        return True

    async def aclose(self) -> None:
        """Cancel any generation and close the HTTP client."""
        await self.cancel()
        await self.client.close()

    async def _start(
        self, request: PlanStreamRequest, on_event: EventCallback | None
    ) -> tuple[asyncio.Task[None], PlanStreamState]:
        await self.cancel()
        state = PlanStreamState(is_generating=True)
        self.state = state
        self._task = asyncio.create_task(self._run(request, _Generation(state, self.markers), on_event))
        return self._task, state

    async def _run(self, request: PlanStreamRequest, generation: _Generation, on_event: EventCallback | None) -> None:
        state = generation.state

        def emit(event: PlanStreamEvent | None) -> None:
            if event is not None and on_event is not None:
                on_event(event)

        lines = self.client.lines(request)
        try:
            async with aclosing(lines):
                async for payload in iter_sse_data(lines):
                    if payload.strip() == DONE_SENTINEL:
                        state.finished = state.error is None
                        break
                    emit(generation.apply(payload))
                    if state.error is not None:
                        break
                else:
                    if not state.finished:
                        emit(generation.fail(INCOMPLETE_STREAM_ERROR))
        except UpstreamError as e:
            emit(generation.fail(str(e)))
        except asyncio.CancelledError:
            state.cancelled = True
            state.finished = False
            raise
        finally:
            state.is_generating = False

        log.info(
            "plan_stream_completed",
            thread_id=request.thread_id,
            finished=state.finished,
            error=state.error,
            content_type=state.content_type.value,
            content_length=len(state.content),
            tool_calls=len(state.tool_calls),
        )
