"""
Longshot - Message Router
Request/response message protocol and CAPTURE_STATUS broadcasting.

Inbound messages are validated against the discriminated union in
capture_models before any field is read. Replies are either
{"success": true, ...} or {"success": false, "error": <summary>, "code": <CODE>}.
"""

import asyncio
import logging
from typing import Any, Dict, Set

from pydantic import ValidationError

from capture_models import (
    CancelCaptureMessage,
    GetCaptureStatusMessage,
    SetConfigMessage,
    StartCaptureMessage,
    StartRegionCaptureMessage,
    StatusRecord,
    inbound_message_adapter,
)
from utils.error_handler import InvalidMessageError, LongshotError, get_user_friendly_message

logger = logging.getLogger(__name__)


class StatusBroadcaster:
    """
    Fans CAPTURE_STATUS messages out to subscribers.

    Each subscriber owns a bounded queue; when a slow subscriber's queue is
    full its oldest message is dropped.
    """

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        self._subscribers.discard(queue)

    def publish(self, record: StatusRecord):
        message = {"type": "CAPTURE_STATUS", **record.to_wire()}
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(message)


class MessageRouter:
    """Dispatches protocol messages addressed to a tab"""

    def __init__(self, orchestrator, config_manager):
        self.orchestrator = orchestrator
        self.config_manager = config_manager
        self._handlers = {
            "START_CAPTURE": self._start_capture,
            "START_REGION_CAPTURE": self._start_region_capture,
            "START_SITE_CENTER_CAPTURE": self._start_site_center_capture,
            "CANCEL_CAPTURE": self._cancel_capture,
            "GET_CAPTURE_STATUS": self._get_capture_status,
            "GET_CONFIG": self._get_config,
            "SET_CONFIG": self._set_config,
            "DETECT_SITE_TYPE": self._detect_site_type,
        }

    async def handle(self, tab_id: str, payload: Any) -> Dict[str, Any]:
        """
        Validate and dispatch one message.

        Protocol-level failures (malformed message, capture errors) come back
        as failure replies; anything else propagates to the caller.
        """
        try:
            message = inbound_message_adapter.validate_python(payload)
        except ValidationError as e:
            errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
            return self.error_reply(InvalidMessageError(f"{e.error_count()} invalid fields", errors=errors))

        try:
            data = await self._handlers[message.type](tab_id, message)
        except LongshotError as e:
            return self.error_reply(e)
        return {"success": True, **data}

    @staticmethod
    def error_reply(error: LongshotError) -> Dict[str, Any]:
        logger.warning(f"[MessageRouter] {error.code}: {error.message}")
        return {"success": False, "error": get_user_friendly_message(error), "code": error.code}

    def _effective_config(self, message_config):
        return message_config or self.config_manager.get()

    async def _start_capture(self, tab_id: str, message: StartCaptureMessage) -> dict:
        session_id = await self.orchestrator.start_capture(tab_id, self._effective_config(message.config))
        return {"sessionId": session_id}

    async def _start_region_capture(self, tab_id: str, message: StartRegionCaptureMessage) -> dict:
        session_id = await self.orchestrator.start_region_capture(
            tab_id, selector=message.selector, rect=message.rect, config=self.config_manager.get()
        )
        return {"sessionId": session_id}

    async def _start_site_center_capture(self, tab_id: str, message) -> dict:
        session_id = await self.orchestrator.start_site_center_capture(tab_id, self.config_manager.get())
        return {"sessionId": session_id}

    async def _cancel_capture(self, tab_id: str, message: CancelCaptureMessage) -> dict:
        record = await self.orchestrator.cancel(message.session_id)
        return {"captureState": record.to_wire()}

    async def _get_capture_status(self, tab_id: str, message: GetCaptureStatusMessage) -> dict:
        if message.session_id:
            record = self.orchestrator.get_status(session_id=message.session_id)
        else:
            record = self.orchestrator.get_status(tab_id=tab_id)
        return {"captureState": record.to_wire() if record else None}

    async def _get_config(self, tab_id: str, message) -> dict:
        return {"config": self.config_manager.get().model_dump(by_alias=True)}

    async def _set_config(self, tab_id: str, message: SetConfigMessage) -> dict:
        updated = self.config_manager.update(message.config)
        return {"config": updated.model_dump(by_alias=True)}

    async def _detect_site_type(self, tab_id: str, message) -> dict:
        detection = await self.orchestrator.detect_site_type(tab_id)
        return detection.model_dump(by_alias=True)
