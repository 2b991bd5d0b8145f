import base64
import io
import mimetypes
import os
from collections.abc import Mapping
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple

from loguru import logger
from prediction_client.errors import PayloadTooLargeError
from prediction_client.models import MAX_DATA_URI_SIZE, Blob

DEFAULT_MIME_TYPE = "application/octet-stream"


class NodeKind(str, Enum):
    sequence = "sequence"
    mapping = "mapping"
    binary = "binary"
    scalar = "scalar"


def classify(value: Any) -> NodeKind:
    if isinstance(value, (list, tuple)):
        return NodeKind.sequence
    if isinstance(value, Mapping):
        return NodeKind.mapping
    if isinstance(value, (bytes, bytearray, memoryview, Blob)):
        return NodeKind.binary
    if isinstance(value, io.IOBase) and hasattr(value, "read"):
        return NodeKind.binary
    return NodeKind.scalar


async def transform(value: Any, mapper: Callable[[Any], Awaitable[Any]]) -> Any:
    """Rebuild a nested value, passing every binary leaf through ``mapper``"""
    kind = classify(value)

    if kind is NodeKind.sequence:
        items = [await transform(item, mapper) for item in value]
        return tuple(items) if isinstance(value, tuple) else items

    if kind is NodeKind.mapping:
        return {key: await transform(item, mapper) for key, item in value.items()}

    if kind is NodeKind.binary:
        return await mapper(value)

    return value


def _read_binary(value: Any) -> Tuple[bytes, Optional[str]]:
    """Extract the raw bytes and MIME type (if known) of a binary leaf"""
    if isinstance(value, Blob):
        return value.data, value.content_type

    if isinstance(value, io.IOBase):
        name = getattr(value, "name", None)
        mime = mimetypes.guess_type(os.fspath(name))[0] if isinstance(name, (str, os.PathLike)) else None
        data = value.read()
        if isinstance(data, str):
            data = data.encode("utf-8")
        return data, mime

    return bytes(value), None


async def transform_file_inputs(inputs: Any, limit: int = MAX_DATA_URI_SIZE) -> Any:
    """Replace binary leaves in ``inputs`` with base64 ``data:`` URIs.

    The byte count is summed over every binary leaf in the tree. Once it
    goes past ``limit`` no further leaves are encoded and, after the whole
    tree has been visited, PayloadTooLargeError reports the full total.
    """
    total_bytes = 0

    async def encode(value: Any) -> Optional[str]:
        nonlocal total_bytes

        data, mime = _read_binary(value)
        total_bytes += len(data)
        if total_bytes > limit:
            return None

        payload = base64.b64encode(data).decode("ascii")
        return f"data:{mime or DEFAULT_MIME_TYPE};base64,{payload}"

    result = await transform(inputs, encode)

    if total_bytes > limit:
        logger.error(f"Inline file inputs total {total_bytes} bytes, limit is {limit}")
        raise PayloadTooLargeError(total_bytes, limit)

    if total_bytes:
        logger.debug(f"Encoded {total_bytes} bytes of file inputs as data URIs")
    return result
