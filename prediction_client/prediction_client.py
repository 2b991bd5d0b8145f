import asyncio
import inspect
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import aiohttp
from loguru import logger
from prediction_client.errors import (
    ApiError,
    InvalidPredictionError,
    InvalidReferenceError,
    PredictionFailedError,
    StreamingNotSupportedError,
)
from prediction_client.files import transform_file_inputs
from prediction_client.models import (
    ClientConfig,
    HttpResponse,
    ModelVersionIdentifier,
    Page,
    Prediction,
    PredictionStatus,
    ServerSentEvent,
    WaitConfig,
)
from prediction_client.retry import should_retry_for, with_automatic_retries
from prediction_client.stream import Stream

ProgressCallback = Callable[[Prediction], Any]
StopCallback = Callable[[Prediction], Any]


async def _invoke(callback: Callable[..., Any], *args: Any) -> Any:
    """Call a plain or async callback and return its result"""
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class PredictionClient:
    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or ClientConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "PredictionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self.config.user_agent}
        if self.config.auth:
            headers["Authorization"] = f"Bearer {self.config.auth}"
        return headers

    def _url(self, route: str) -> str:
        if route.startswith(("http://", "https://")):
            return route
        return f"{self.base_url}/{route.lstrip('/')}"

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        data: Optional[Any],
    ) -> HttpResponse:
        """Issues one HTTP request and reads the whole response body"""
        async with self.session.request(
            method, url, params=params, json=data, headers=self._headers()
        ) as response:
            body = await response.read()
            return HttpResponse(
                status=response.status,
                reason=response.reason or "",
                method=method,
                url=str(response.url),
                headers={key.lower(): value for key, value in response.headers.items()},
                body=body,
            )

    async def request(
        self,
        route: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
    ) -> HttpResponse:
        """Makes a request to the API, retrying it according to the client's retry config"""
        method = method.upper()
        url = self._url(route)

        response = await with_automatic_retries(
            lambda: self._send(method, url, params, data),
            self.config.retry,
            should_retry_for(method),
        )

        if not response.ok:
            self.logger.error(f"HTTP error {response.status} at {url}: {response.text}")
            raise ApiError.from_response(response)
        return response

    async def create_prediction(
        self,
        input: Dict[str, Any],
        version: Optional[str] = None,
        model: Optional[str] = None,
        stream: bool = False,
        webhook: Optional[str] = None,
        webhook_events_filter: Optional[List[str]] = None,
    ) -> Prediction:
        if (version is None) == (model is None):
            raise InvalidReferenceError("Exactly one of version or model must be given")

        data: Dict[str, Any] = {"input": await transform_file_inputs(input)}
        if version is not None:
            data["version"] = version
        else:
            data["model"] = model
        if stream:
            data["stream"] = True
        if webhook:
            data["webhook"] = webhook
        if webhook_events_filter:
            data["webhook_events_filter"] = webhook_events_filter

        response = await self.request("/predictions", method="POST", data=data)
        prediction = Prediction.model_validate(response.json())
        self.logger.info(f"Created prediction {prediction.id} ({prediction.status.value})")
        return prediction

    async def get_prediction(self, prediction_id: str) -> Prediction:
        response = await self.request(f"/predictions/{prediction_id}")
        return Prediction.model_validate(response.json())

    async def cancel_prediction(self, prediction_id: str) -> Prediction:
        self.logger.info(f"Cancelling prediction {prediction_id}")
        response = await self.request(f"/predictions/{prediction_id}/cancel", method="POST")
        return Prediction.model_validate(response.json())

    async def list_predictions(self) -> Page:
        response = await self.request("/predictions")
        return Page.model_validate(response.json())

    async def _create_for(
        self, identifier: ModelVersionIdentifier, input: Dict[str, Any], **options: Any
    ) -> Prediction:
        if identifier.version:
            return await self.create_prediction(input, version=identifier.version, **options)
        return await self.create_prediction(input, model=identifier.model, **options)

    async def wait(
        self,
        prediction: Prediction,
        options: Optional[WaitConfig] = None,
        stop: Optional[StopCallback] = None,
    ) -> Prediction:
        """Polls a prediction until it succeeds, fails or is canceled.

        A prediction that is already terminal is returned as-is without any
        request. ``stop`` is called with the latest record before every
        sleep; when it returns True polling ends and that record is returned.
        Raises PredictionFailedError if the prediction ends up failed.
        """
        if not prediction.id:
            raise InvalidPredictionError("Invalid prediction: missing id")

        if prediction.status.is_terminal:
            return prediction

        interval = (options or self.config.wait).interval

        updated = await self.get_prediction(prediction.id)

        while not updated.status.is_terminal:
            if stop is not None and await _invoke(stop, updated) is True:
                self.logger.debug(f"Stopped polling prediction {updated.id}")
                break

            self.logger.debug(
                f"Prediction {updated.id} is {updated.status.value}, "
                f"waiting {interval:.2f}s before next poll"
            )
            await asyncio.sleep(interval)
            updated = await self.get_prediction(prediction.id)

        if updated.status == PredictionStatus.failed:
            self.logger.error(f"Prediction {updated.id} failed: {updated.error}")
            raise PredictionFailedError(updated)

        return updated

    async def run(
        self,
        ref: str,
        input: Dict[str, Any],
        wait_config: Optional[WaitConfig] = None,
        signal: Optional[asyncio.Event] = None,
        progress: Optional[ProgressCallback] = None,
        webhook: Optional[str] = None,
        webhook_events_filter: Optional[List[str]] = None,
    ) -> Any:
        """Runs a model and returns its output once the prediction finishes.

        ``ref`` is ``owner/name`` or ``owner/name:version``. ``progress`` is
        called with the created prediction, every polled update and the
        final record. Setting ``signal`` cancels the prediction at the next
        poll.
        """
        identifier = ModelVersionIdentifier.parse(ref)

        prediction = await self._create_for(
            identifier,
            input,
            webhook=webhook,
            webhook_events_filter=webhook_events_filter,
        )

        if progress is not None:
            await _invoke(progress, prediction)

        async def stop(updated: Prediction) -> bool:
            if progress is not None:
                await _invoke(progress, updated)

            if signal is not None and signal.is_set():
                await self.cancel_prediction(updated.id)
                return True
            return False

        try:
            prediction = await self.wait(prediction, wait_config, stop)
        except PredictionFailedError as failure:
            if progress is not None:
                await _invoke(progress, failure.prediction)
            raise

        if progress is not None:
            await _invoke(progress, prediction)

        return prediction.output

    async def paginate(
        self, endpoint: Callable[[], Awaitable[Page]]
    ) -> AsyncIterator[List[Any]]:
        """Yields the results of each page, following ``next`` links until the last page"""
        page = await endpoint()
        while True:
            yield page.results
            if not page.next:
                return
            response = await self.request(page.next, method="GET")
            page = Page.model_validate(response.json())

    def stream_prediction(
        self, prediction: Prediction, signal: Optional[asyncio.Event] = None
    ) -> Stream:
        if not prediction.urls.stream:
            raise StreamingNotSupportedError(
                f"Prediction {prediction.id} does not support streaming"
            )
        return Stream(
            prediction.urls.stream,
            self.session,
            signal,
            self._headers(),
            connect_timeout=self.config.timeout,
        )

    async def stream(
        self,
        ref: str,
        input: Dict[str, Any],
        signal: Optional[asyncio.Event] = None,
        webhook: Optional[str] = None,
        webhook_events_filter: Optional[List[str]] = None,
    ) -> AsyncIterator[ServerSentEvent]:
        """Creates a streaming prediction and yields its events"""
        identifier = ModelVersionIdentifier.parse(ref)

        prediction = await self._create_for(
            identifier,
            input,
            stream=True,
            webhook=webhook,
            webhook_events_filter=webhook_events_filter,
        )

        events = self.stream_prediction(prediction, signal).__aiter__()
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()
