"""Line-delimited JSON over a unix socket from hook processes to the daemon.

One request line in, one response line out, then the connection closes.
Delivery is at-most-once: nothing is retried or persisted.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .errors import HookProtocolError
from .hooks import extract_job_number_from_path

logger = logging.getLogger("pleb.ipc")

SOCKET_NAME = "pleb.sock"
QUEUE_SIZE = 32
_UINT64_MAX = 2**64 - 1


class HookMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event_name: str = Field(min_length=1)
    issue_number: int = Field(
        ge=0,
        le=_UINT64_MAX,
        validation_alias=AliasChoices("issue_number", "job_id"),
    )
    payload: Dict[str, Any] = Field(default_factory=dict)


class HookResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool
    message: Optional[str] = None


def parse_hook_message(line: Union[str, bytes]) -> HookMessage:
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    text = text.strip()
    if not text:
        raise HookProtocolError("Empty hook message")
    try:
        return HookMessage.model_validate_json(text)
    except ValidationError as exc:
        raise HookProtocolError(f"Failed to parse hook message: {exc}") from exc


def socket_path_for(daemon_dir: Path) -> Path:
    return Path(daemon_dir) / SOCKET_NAME


class HookServer:
    def __init__(self, socket_path: Path, *, maxsize: int = QUEUE_SIZE) -> None:
        self.socket_path = Path(socket_path)
        self.queue: asyncio.Queue[HookMessage] = asyncio.Queue(maxsize=maxsize)
        self._server: Optional[asyncio.AbstractServer] = None
        self._closing = False

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> asyncio.Queue[HookMessage]:
        if self.socket_path.exists() or self.socket_path.is_symlink():
            logger.debug("Removing stale socket %s", self.socket_path)
            self.socket_path.unlink()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        self._server = await asyncio.start_unix_server(
            self._handle_connection, path=str(self.socket_path)
        )
        self._closing = False
        logger.info("Hook server listening on %s", self.socket_path)
        return self.queue

    async def close(self) -> None:
        self._closing = True
        server, self._server = self._server, None
        if server is not None:
            server.close()
            await server.wait_closed()
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass
        logger.debug("Hook server closed")

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            line = await reader.readline()
            try:
                message = parse_hook_message(line)
            except HookProtocolError as exc:
                logger.warning("Rejected hook message: %s", exc)
                await _write_response(writer, HookResponse(success=False, message=str(exc)))
                return
            logger.debug(
                "Received hook message: event=%s job=%s",
                message.event_name,
                message.issue_number,
            )
            if self._closing:
                await _write_response(
                    writer,
                    HookResponse(success=False, message="Daemon is shutting down"),
                )
                return
            await self.queue.put(message)
            await _write_response(writer, HookResponse(success=True))
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.warning("Error handling hook connection: %s", exc)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass


async def _write_response(writer: asyncio.StreamWriter, response: HookResponse) -> None:
    writer.write(response.model_dump_json().encode("utf-8") + b"\n")
    await writer.drain()


class HookClient:
    def __init__(self, socket_path: Path) -> None:
        self.socket_path = Path(socket_path)

    @classmethod
    def for_daemon_dir(cls, daemon_dir: Path) -> "HookClient":
        return cls(socket_path_for(daemon_dir))

    async def send(self, message: HookMessage) -> HookResponse:
        """Send one message; connection failures propagate as ``OSError``."""
        reader, writer = await asyncio.open_unix_connection(str(self.socket_path))
        try:
            writer.write(message.model_dump_json().encode("utf-8") + b"\n")
            await writer.drain()
            line = await reader.readline()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass
        try:
            return HookResponse.model_validate_json(line.decode("utf-8").strip() or "{}")
        except ValidationError as exc:
            raise HookProtocolError(f"Failed to parse daemon response: {exc}") from exc


async def run_hook_command(
    event: str, stdin_text: str, daemon_dir: Path
) -> Optional[HookResponse]:
    """Forward one worker hook invocation to the daemon.

    Returns None when the directory is not a job worktree or the daemon is
    not listening; neither is an error for the worker.
    """
    try:
        payload = json.loads(stdin_text or "")
    except json.JSONDecodeError as exc:
        raise HookProtocolError(f"Failed to parse JSON from stdin: {exc}") from exc
    if not isinstance(payload, dict):
        raise HookProtocolError("Hook payload must be a JSON object")
    cwd = payload.get("cwd")
    if not isinstance(cwd, str) or not cwd:
        raise HookProtocolError("Missing or invalid 'cwd' field in hook payload")

    job_number = extract_job_number_from_path(cwd)
    if job_number is None:
        logger.debug("No job number found in path: %s", cwd)
        return None

    message = HookMessage(event_name=event, issue_number=job_number, payload=payload)
    client = HookClient.for_daemon_dir(daemon_dir)
    try:
        response = await client.send(message)
    except OSError as exc:
        logger.debug(
            "Could not send hook %s to daemon (not running?): %s", event, exc
        )
        return None
    if response.success:
        logger.info("Hook %s sent to daemon for job #%s", event, job_number)
    else:
        logger.warning(
            "Daemon rejected hook %s for job #%s: %s",
            event,
            job_number,
            response.message,
        )
    return response
