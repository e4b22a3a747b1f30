"""
iMessage Sender — drives Messages.app through osascript.

Runs on the Mac that hosts the Messages account. The script targets the
first iMessage service and sends to the buddy matching the handle (phone
number or Apple ID email). osascript exiting non-zero is a SendError
carrying its stderr.
"""
from __future__ import annotations

import asyncio
import structlog

from channels.base import MessageSender, SendError, SendTimeoutError

logger = structlog.get_logger()


def escape_apple_script(value: str) -> str:
    """Escape a value for use inside an AppleScript string literal."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def build_apple_script(to: str, body: str) -> str:
    safe_to = escape_apple_script(to)
    safe_body = escape_apple_script(body)
    return "\n".join([
        'tell application "Messages"',
        "  set targetService to 1st service whose service type = iMessage",
        f'  set targetBuddy to buddy "{safe_to}" of targetService',
        f'  send "{safe_body}" to targetBuddy',
        "end tell",
    ])


class AppleScriptSender(MessageSender):
    """Sends through Messages.app. One osascript process per message."""

    channel = "imessage"
    method = "applescript"

    def __init__(self, osascript: str = "osascript", timeout_s: float = 30.0):
        super().__init__()
        self.osascript = osascript
        self.timeout_s = timeout_s

    async def _do_send(self, handle: str, body: str) -> None:
        script = build_apple_script(handle, body)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.osascript, "-e", script,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise SendError(f"osascript not available: {e}", self.channel, retryable=False) from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise SendTimeoutError(self.channel, self.timeout_s) from None

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip() or f"osascript exited {proc.returncode}"
            raise SendError(detail, self.channel)
