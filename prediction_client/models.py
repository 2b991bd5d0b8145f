import json
import os
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from prediction_client.errors import InvalidReferenceError

MAX_DATA_URI_SIZE = 10_000_000

DEFAULT_BASE_URL = "https://api.replicate.com/v1"
DEFAULT_USER_AGENT = "prediction-client-python/0.1.0"
TOKEN_ENV_VAR = "PREDICTION_API_TOKEN"

_REFERENCE_PATTERN = re.compile(r"^(?P<owner>[^/]+)/(?P<name>[^/:]+)(:(?P<version>.+))?$")


class PredictionStatus(str, Enum):
    starting = "starting"
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"
    canceled = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            PredictionStatus.succeeded,
            PredictionStatus.failed,
            PredictionStatus.canceled,
        )


class PredictionUrls(BaseModel):
    model_config = ConfigDict(extra="allow")

    get: Optional[str] = None
    cancel: Optional[str] = None
    stream: Optional[str] = None


class Prediction(BaseModel):
    model_config = ConfigDict(extra="allow", protected_namespaces=())

    id: str
    status: PredictionStatus
    version: Optional[str] = None
    model: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    output: Any = None
    error: Any = None
    logs: Optional[str] = None
    urls: PredictionUrls = Field(default_factory=PredictionUrls)
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class Page(BaseModel):
    results: List[Any] = Field(default_factory=list)
    next: Optional[str] = None
    previous: Optional[str] = None


class RetryConfig(BaseModel):
    max_retries: int = 5
    interval: float = 0.5
    jitter: float = 0.1


class WaitConfig(BaseModel):
    interval: float = 0.5


class ClientConfig(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    auth: Optional[str] = Field(default_factory=lambda: os.environ.get(TOKEN_ENV_VAR))
    user_agent: str = DEFAULT_USER_AGENT
    timeout: float = 60.0
    retry: RetryConfig = Field(default_factory=RetryConfig)
    wait: WaitConfig = Field(default_factory=WaitConfig)


class ModelVersionIdentifier(BaseModel):
    """A model reference of the form ``owner/name`` or ``owner/name:version``"""

    owner: str
    name: str
    version: Optional[str] = None

    @classmethod
    def parse(cls, ref: str) -> "ModelVersionIdentifier":
        match = _REFERENCE_PATTERN.match(ref or "")
        if match is None:
            raise InvalidReferenceError(
                f"Invalid reference to model version: {ref!r}. "
                "Expected format: owner/name or owner/name:version"
            )
        return cls(**match.groupdict())

    @property
    def model(self) -> str:
        return f"{self.owner}/{self.name}"


class Blob(BaseModel):
    """Raw bytes with an optional MIME type, inlined as a data URI on submission"""

    data: bytes
    content_type: Optional[str] = None


class HttpResponse(BaseModel):
    status: int
    reason: str = ""
    method: str = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


class ServerSentEvent(BaseModel):
    event: str = "message"
    data: str = ""
    id: Optional[str] = None

    def __str__(self) -> str:
        if self.event == "output":
            return self.data
        return ""
