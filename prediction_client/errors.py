from typing import Any, Dict, Optional


class PredictionClientError(Exception):
    """Base class for every error raised by the prediction client"""


class ApiError(PredictionClientError):
    def __init__(
        self,
        status: int,
        reason: str,
        body: str,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.status = status
        self.reason = reason
        self.body = body
        self.method = method
        self.url = url
        self.headers = {key.lower(): value for key, value in (headers or {}).items()}
        super().__init__(
            f"Request to {method} {url} failed with status {status} {reason}: {body}."
        )

    @classmethod
    def from_response(cls, response: Any) -> "ApiError":
        return cls(
            status=response.status,
            reason=response.reason,
            body=response.text,
            method=response.method,
            url=response.url,
            headers=response.headers,
        )


class PredictionFailedError(PredictionClientError):
    def __init__(self, prediction: Any):
        self.prediction = prediction
        self.error = prediction.error
        super().__init__(f"Prediction failed: {prediction.error}")


class InvalidReferenceError(PredictionClientError, ValueError):
    pass


class InvalidPredictionError(PredictionClientError, ValueError):
    pass


class PayloadTooLargeError(PredictionClientError):
    def __init__(self, total_bytes: int, limit: int):
        self.total_bytes = total_bytes
        self.limit = limit
        super().__init__(
            f"Combined filesize of prediction {total_bytes} bytes exceeds "
            f"{limit} byte limit for inline encoding, please provide URLs instead"
        )


class StreamingNotSupportedError(PredictionClientError):
    pass
