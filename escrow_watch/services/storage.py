"""Content-addressed storage of encrypted payloads on a Swarm Bee node."""

import logging
import re
from typing import Protocol

import httpx

from escrow_watch.errors import ErrorCode, WatchError

logger = logging.getLogger(__name__)

_REFERENCE_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class ContentStore(Protocol):
    async def upload(self, data: bytes) -> str: ...

    async def download(self, reference: str) -> bytes: ...


def validate_reference(reference: str) -> str:
    ref = reference.removeprefix("0x")
    if not _REFERENCE_RE.match(ref):
        raise WatchError(
            ErrorCode.INVALID_ARGUMENT,
            "Invalid Swarm reference format",
            "Must be 64 hex characters",
        )
    return ref.lower()


class SwarmStore:
    """Bee ``/bytes`` API. Downloads are capped at ``max_download_bytes``."""

    def __init__(
        self,
        api_url: str,
        *,
        postage_batch_id: str = "",
        max_download_bytes: int = 50 * 1024 * 1024,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.postage_batch_id = postage_batch_id
        self.max_download_bytes = max_download_bytes
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.api_url, timeout=self.timeout, transport=self._transport)

    async def upload(self, data: bytes) -> str:
        if not self.postage_batch_id:
            raise WatchError(
                ErrorCode.INVALID_ARGUMENT,
                "No postage batch configured for uploads",
                "Set ESCROW_WATCH_BEE_POSTAGE_BATCH_ID",
            )

        async with self._client() as client:
            try:
                resp = await client.post(
                    "/bytes",
                    content=data,
                    headers={
                        "Content-Type": "application/octet-stream",
                        "swarm-postage-batch-id": self.postage_batch_id,
                    },
                )
            except httpx.TimeoutException:
                raise WatchError(ErrorCode.NETWORK_TIMEOUT, "Swarm upload timed out") from None
            except httpx.RequestError as e:
                logger.error("Swarm upload request failed: %s", e)
                raise WatchError(ErrorCode.API_ERROR, "Failed to reach Bee node") from None

        if resp.status_code == 400 and "batch" in resp.text:
            raise WatchError(ErrorCode.INVALID_ARGUMENT, "Invalid or expired postage stamp")
        if resp.status_code == 429:
            raise WatchError(ErrorCode.RATE_LIMITED, "Bee node rate limited", "Wait and retry")
        if resp.status_code not in (200, 201):
            logger.error("Swarm upload returned %d: %s", resp.status_code, resp.text[:500])
            raise WatchError(ErrorCode.API_ERROR, f"Swarm upload failed (status {resp.status_code})")

        try:
            reference = resp.json().get("reference", "")
        except ValueError:
            reference = ""
        if not isinstance(reference, str) or not _REFERENCE_RE.match(reference):
            raise WatchError(ErrorCode.API_ERROR, "Invalid Swarm reference returned")
        return reference.lower()

    async def download(self, reference: str) -> bytes:
        ref = validate_reference(reference)
        path = f"/bytes/{ref}"

        async with self._client() as client:
            await self._check_size(client, path)
            try:
                async with client.stream("GET", path, headers={"Accept": "application/octet-stream"}) as resp:
                    if resp.status_code == 404:
                        raise WatchError(
                            ErrorCode.NOT_FOUND,
                            f"Content not found on Swarm: {ref}",
                            "The content may have expired or the reference is invalid",
                        )
                    if resp.status_code != 200:
                        raise WatchError(
                            ErrorCode.DOWNLOAD_FAILED,
                            f"Swarm download failed (status {resp.status_code})",
                        )
                    body = bytearray()
                    async for chunk in resp.aiter_bytes():
                        body.extend(chunk)
                        if len(body) > self.max_download_bytes:
                            raise WatchError(
                                ErrorCode.DOWNLOAD_FAILED,
                                f"Downloaded data exceeds {self.max_download_bytes} bytes",
                            )
            except httpx.TimeoutException:
                raise WatchError(ErrorCode.NETWORK_TIMEOUT, "Swarm download timed out") from None
            except httpx.RequestError as e:
                logger.error("Swarm download request failed: %s", e)
                raise WatchError(ErrorCode.DOWNLOAD_FAILED, "Failed to reach Bee node") from None

        return bytes(body)

    async def _check_size(self, client: httpx.AsyncClient, path: str) -> None:
        try:
            resp = await client.head(path)
        except httpx.HTTPError as e:
            # Some gateways reject HEAD; the streamed GET enforces the cap anyway
            logger.debug("HEAD %s failed: %s", path, e)
            return
        length = resp.headers.get("content-length")
        if length and length.isdigit() and int(length) > self.max_download_bytes:
            raise WatchError(
                ErrorCode.DOWNLOAD_FAILED,
                f"Content-Length exceeds {self.max_download_bytes} bytes",
            )
