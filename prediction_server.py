import asyncio
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import web
from loguru import logger

DEFAULT_STEPS = ["starting", "processing", "succeeded"]


class PredictionServer:
    """In-process stand-in for the prediction API.

    Every poll of a prediction advances it one step through ``steps``.
    ``failures`` holds (status, headers) responses returned, in order, before
    any request is handled.
    """

    def __init__(
        self,
        steps: Optional[List[str]] = None,
        output: Any = "hello world",
        error: Any = "something went wrong",
        pages: Optional[List[List[Any]]] = None,
        stream_chunks: Optional[List[bytes]] = None,
        hold_stream: bool = False,
        chunk_delay: float = 0.0,
        drop_stream: bool = False,
    ):
        self.steps = steps or list(DEFAULT_STEPS)
        self.output = output
        self.error = error
        self.pages = pages if pages is not None else [[]]
        self.stream_chunks = stream_chunks or []
        self.hold_stream = hold_stream
        self.chunk_delay = chunk_delay
        self.drop_stream = drop_stream
        self.failures: List[Tuple[int, Dict[str, str]]] = []
        self.predictions: Dict[str, Dict[str, Any]] = {}
        self.created: List[Dict[str, Any]] = []
        self.hits: Counter = Counter()
        self.stream_closed = asyncio.Event()
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application(middlewares=[self.inject_failures])
        self.app.router.add_post("/predictions", self.handle_create)
        self.app.router.add_get("/predictions", self.handle_list)
        self.app.router.add_get("/predictions/{id}", self.handle_get)
        self.app.router.add_post("/predictions/{id}/cancel", self.handle_cancel)
        self.app.router.add_get("/predictions/{id}/stream", self.handle_stream)
        self.logger = logger

    @web.middleware
    async def inject_failures(self, request, handler):
        resource = request.match_info.route.resource
        key = f"{request.method} {resource.canonical if resource else request.path}"
        self.hits[key] += 1
        if self.failures:
            status, headers = self.failures.pop(0)
            self.logger.info(f"Returning injected {status} for {key}")
            return web.json_response({"detail": "injected failure"}, status=status, headers=headers)
        return await handler(request)

    def _record(self, prediction: Dict[str, Any]) -> Dict[str, Any]:
        step = min(prediction["_step"], len(self.steps) - 1)
        status = self.steps[step]
        record = {key: value for key, value in prediction.items() if not key.startswith("_")}
        record["status"] = prediction.get("_override") or status
        if record["status"] == "succeeded":
            record["output"] = self.output
            record["completed_at"] = datetime.now(timezone.utc).isoformat()
        if record["status"] == "failed":
            record["error"] = self.error
        return record

    async def handle_create(self, request):
        body = await request.json()
        self.created.append(body)
        prediction_id = uuid.uuid4().hex
        base = f"{request.url.origin()}/predictions/{prediction_id}"
        urls = {"get": base, "cancel": f"{base}/cancel"}
        if body.get("stream"):
            urls["stream"] = f"{base}/stream"

        prediction = {
            "id": prediction_id,
            "version": body.get("version"),
            "model": body.get("model"),
            "input": body.get("input"),
            "urls": urls,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "_step": 0,
        }
        self.predictions[prediction_id] = prediction
        self.logger.info(f"Created prediction {prediction_id}")
        return web.json_response(self._record(prediction), status=201)

    async def handle_get(self, request):
        prediction = self.predictions.get(request.match_info["id"])
        if prediction is None:
            raise web.HTTPNotFound()
        prediction["_step"] += 1
        record = self._record(prediction)
        self.logger.info(f"Returning {record['status']} status for {prediction['id']}")
        return web.json_response(record)

    async def handle_cancel(self, request):
        prediction = self.predictions.get(request.match_info["id"])
        if prediction is None:
            raise web.HTTPNotFound()
        prediction["_override"] = "canceled"
        return web.json_response(self._record(prediction))

    async def handle_list(self, request):
        index = int(request.query.get("page", "0"))
        payload = {"results": self.pages[index], "next": None, "previous": None}
        if index + 1 < len(self.pages):
            payload["next"] = f"{request.url.origin()}/predictions?page={index + 1}"
        if index > 0:
            payload["previous"] = f"{request.url.origin()}/predictions?page={index - 1}"
        return web.json_response(payload)

    async def handle_stream(self, request):
        if request.match_info["id"] not in self.predictions:
            raise web.HTTPNotFound()

        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        try:
            for chunk in self.stream_chunks:
                await response.write(chunk)
                await asyncio.sleep(self.chunk_delay)
            if self.drop_stream:
                self.logger.info("Dropping stream connection")
                request.transport.close()
                await response.write_eof()
            while self.hold_stream:
                await asyncio.sleep(0.05)
                await response.write(b": keep-alive\n\n")
        except ConnectionResetError:
            self.logger.info("Stream client disconnected")
        finally:
            self.stream_closed.set()
        return response

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
