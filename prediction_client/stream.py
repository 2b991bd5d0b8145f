import asyncio
from typing import AsyncIterator, Dict, List, Optional

import aiohttp
from loguru import logger
from prediction_client.errors import ApiError
from prediction_client.models import ServerSentEvent


class Stream:
    """Server-sent events of a single prediction, consumable once.

    Iterating opens the connection. It is closed when the server sends a
    ``done`` event, when the body ends, when ``signal`` is set or when the
    iterator is closed early. Streams are never retried.
    """

    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession,
        signal: Optional[asyncio.Event] = None,
        headers: Optional[Dict[str, str]] = None,
        connect_timeout: Optional[float] = None,
    ):
        self.url = url
        self.session = session
        self.signal = signal
        self.headers = dict(headers or {})
        # no total timeout: the connection stays open for as long as the prediction runs
        self.timeout = aiohttp.ClientTimeout(total=None, sock_connect=connect_timeout)
        self.logger = logger
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[ServerSentEvent]:
        if self._consumed:
            raise RuntimeError("Stream has already been consumed")
        self._consumed = True
        return self._events()

    def _cancelled(self) -> bool:
        return self.signal is not None and self.signal.is_set()

    async def _next_line(self, content: aiohttp.StreamReader) -> Optional[bytes]:
        """Read one line, or return None once the cancellation signal fires"""
        if self.signal is None:
            return await content.readline()

        read = asyncio.ensure_future(content.readline())
        cancelled = asyncio.ensure_future(self.signal.wait())
        try:
            done, _ = await asyncio.wait(
                {read, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (read, cancelled):
                task.cancel()
            await asyncio.gather(read, cancelled, return_exceptions=True)

        if cancelled in done:
            return None
        return read.result()

    async def _events(self) -> AsyncIterator[ServerSentEvent]:
        if self._cancelled():
            return

        headers = {
            **self.headers,
            "Accept": "text/event-stream",
            "Cache-Control": "no-store",
        }
        async with self.session.get(
            self.url, headers=headers, timeout=self.timeout
        ) as response:
            if response.status >= 400:
                body = await response.text()
                self.logger.error(f"HTTP error {response.status} at {self.url}: {body}")
                raise ApiError(
                    status=response.status,
                    reason=response.reason or "",
                    body=body,
                    method="GET",
                    url=self.url,
                    headers=dict(response.headers),
                )

            self.logger.debug(f"Connected to event stream at {self.url}")
            fields: Dict[str, List[str]] = {}
            malformed = False

            while True:
                raw = await self._next_line(response.content)
                if raw is None:
                    self.logger.info(f"Event stream at {self.url} cancelled")
                    return
                if raw == b"":
                    return

                try:
                    line = raw.decode("utf-8").rstrip("\r\n")
                except UnicodeDecodeError:
                    malformed = True
                    continue

                if line:
                    _parse_field(line, fields)
                    continue

                event = None if malformed else _build_event(fields)
                fields, malformed = {}, False
                if event is None:
                    self.logger.debug(f"Skipping malformed event from {self.url}")
                    continue

                yield event
                if event.event == "done":
                    return


def _parse_field(line: str, fields: Dict[str, List[str]]) -> None:
    if line.startswith(":"):
        return
    name, _, value = line.partition(":")
    if value.startswith(" "):
        value = value[1:]
    if name in ("event", "data", "id"):
        fields.setdefault(name, []).append(value)


def _build_event(fields: Dict[str, List[str]]) -> Optional[ServerSentEvent]:
    if "event" not in fields and "data" not in fields:
        return None

    return ServerSentEvent(
        event=fields.get("event", ["message"])[-1] or "message",
        data="\n".join(fields.get("data", [])),
        id=fields.get("id", [None])[-1],
    )
